"""
shared – tiny helpers imported by every engine component
--------------------------------------------------------
Modules
-------
config.py         → loads `.env` once, builds the immutable EngineConfig
logging.py        → consistent JSON/stdout logger
constants.py      → key names, message types, feature schema tags
redis_client.py   → singleton Redis + heartbeat helpers
models.py         → frozen records passed between pipeline stages
params.py         → versioned copy-on-write parameter tables
retry.py          → the one declarative backoff policy (I/O boundaries)
errors.py         → engine exception hierarchy
utils.py          → misc one-liners that don’t belong elsewhere
"""
