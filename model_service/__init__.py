"""
model_service
=============

The model ensemble: a fixed set of independently-failing predictors run
concurrently over one FeatureVector, each under its own deadline, and a
confidence-weighted vote that turns their outputs into one
EnsembleDecision.

Modules
-------
predictors.py  → rule-based members + momentum fallback
inference.py   → optional torch member (loaded from MODEL_PATH)
ensemble.py    → deadline-bounded fan-out and aggregation
"""
