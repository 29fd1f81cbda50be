"""
trade_executor
==============

Everything that touches the venue link.

* `protocol.py`   – sanitise / decode inbound newline-JSON lines into typed
  records; encode outbound `command` messages.
* `gateway.py`    – asyncio socket server (or reconnecting client), one
  task per connection, heartbeat replies.
* `dispatcher.py` – at most one unacknowledged command per instrument,
  latest-wins pending slot, per-command timeout.
"""
