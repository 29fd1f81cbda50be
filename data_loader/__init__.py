"""
data_loader – rolling market window + feature engineering
=========================================================
Modules
-------
loader.py     → bounded per-instrument snapshot cache, registry, bootstrap
augmenter.py  → deterministic FeatureVector (schema v1) from a window
"""
