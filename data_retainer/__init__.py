"""
data_retainer
=============

• Queues every MarketSnapshot, EnsembleDecision, TradeOutcome, position
  change and parameter table the engine produces, and writes them to
  Redis from a background task (append-only lists, trimmed).
• Appends closed trades to  history/trades/trade_log.csv.
• At startup, hands back the rolling snapshot window and the last
  learned parameter table.
"""
