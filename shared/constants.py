"""
constants.py – single source of hard-coded names
"""

# Redis keys / templates
KEY_SNAPSHOTS     = "live:data:snapshots:{}"      # per-instrument LIST (JSON)
KEY_PREDICTIONS   = "live:predictions:{}"         # per-instrument LIST (JSON)
KEY_TRADES_ACTIVE = "live:trades:active"          # HASH instrument → JSON
KEY_TRADES_CLOSED = "live:trades:closed"          # LIST (JSON outcomes)
KEY_PARAMETERS    = "live:params:current"         # STRING (JSON snapshot)
KEY_PARAM_HISTORY = "live:params:history"         # LIST (JSON snapshots)
KEY_HEARTBEAT     = "heartbeat:{}"                # service-specific
KEY_PAUSE_FLAG    = "flags:trading_paused"

SNAPSHOT_KEEP   = 300          # rolling window persisted per instrument
PREDICTION_KEEP = 1000
HISTORY_KEEP    = 500

# inbound message types (venue → engine)
MSG_MARKET_DATA   = "market_data"
MSG_STATUS        = "strategy_status"
MSG_REGISTRATION  = "instrument_registration"
MSG_TRADE_ENTRY   = "trade_entry"
MSG_TRADE_DONE    = "trade_completed"
MSG_CONFIRMATION  = "command_confirmation"
MSG_HEARTBEAT     = "heartbeat"
MSG_TRAILING      = "smart_trailing_request"

# outbound
MSG_COMMAND = "command"

SERVICE_NAME = "decision_engine"
