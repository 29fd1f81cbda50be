"""
errors.py – exception hierarchy shared by every component
"""


class EngineError(Exception):
    """Base class for everything the engine raises on purpose."""


class ConfigError(EngineError):
    """Invalid configuration – only ever fatal at startup."""


class ProtocolError(EngineError):
    """An inbound line could not be decoded into a known message."""


class PredictorError(EngineError):
    """A predictor failed; it is excluded from that single aggregation."""


class DispatchError(EngineError):
    """An outbound command could not be delivered after retries."""
