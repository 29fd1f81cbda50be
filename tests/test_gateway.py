from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import T0
from shared.config import ConfigStore, EngineConfig
from trade_executor.gateway import VenueGateway
from trade_executor.protocol import MarketData

MARKET = json.dumps({"type": "market_data", "instrument": "ES", "timestamp": T0.isoformat(),
                     "price": 100.0, "volume": 5, "atr": 1.0, "rsi": 50}).encode() + b"\n"


async def test_read_loop_routes_messages_and_answers_heartbeats(config):
    handler = AsyncMock()
    gw = VenueGateway(config, handler)
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"type":"heartbeat"}\n' + b"garbage\n" + b"\n" + MARKET)
    reader.feed_eof()
    writer = MagicMock()
    writer.drain = AsyncMock()

    await gw._read_loop(reader, writer)

    handler.assert_awaited_once()
    assert isinstance(handler.await_args.args[0], MarketData)
    reply = json.loads(writer.write.call_args.args[0])
    assert reply["type"] == "heartbeat"
    assert gw.received == 2
    assert gw.rejected == 1
    assert gw.last_heartbeat is not None


async def test_send_without_venue_raises(config):
    gw = VenueGateway(config, AsyncMock())
    assert not gw.connected
    with pytest.raises(ConnectionError):
        await gw.send(b"{}\n")


async def test_server_round_trip():
    config = ConfigStore(EngineConfig(persist=False, listen_host="127.0.0.1", listen_port=0))
    got = asyncio.Event()

    async def handler(msg):
        got.set()

    gw = VenueGateway(config, handler)
    await gw.start()
    try:
        port = gw._server.sockets[0].getsockname()[1]
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(MARKET)
        await writer.drain()
        await asyncio.wait_for(got.wait(), 2.0)
        assert gw.connected
        await gw.send(b'{"type":"command"}\n')
        line = await asyncio.wait_for(reader.readline(), 2.0)
        assert json.loads(line) == {"type": "command"}
        writer.close()
    finally:
        await gw.close()


async def test_bad_timestamp_does_not_end_the_connection(config):
    handler = AsyncMock()
    gw = VenueGateway(config, handler)
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"type":"market_data","instrument":"ES","price":100,"timestamp":NaN}\n'
                     b'{"type":"market_data","instrument":"ES","price":100,'
                     b'"timestamp":99999999999999999999}\n' + MARKET)
    reader.feed_eof()
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.get_extra_info.return_value = ("127.0.0.1", 50000)

    await gw._serve(reader, writer)

    assert handler.await_count == 3
    assert all(isinstance(c.args[0], MarketData) for c in handler.await_args_list)
    assert gw.rejected == 0
    writer.close.assert_called_once()
