import asyncio
import json
import unittest
from unittest.mock import patch

from app.api.stream import LatestBars
from app.errors import TransportDisconnect
from app.feed.router import SubscriptionRouter
from app.feed.transport import WebSocketTransport
from app.models.market import Bar, RoutingKey

CANDLES = RoutingKey("mark-price-candle1m", "BTC-USD-SWAP")
INDEX = RoutingKey("index-tickers", "BTC-USDT")


def bars(*timestamps):
    return tuple(Bar(ts=t, open=None, high=None, low=None, close=1.0) for t in timestamps)


def candle_frame(ts):
    return json.dumps({"arg": CANDLES.to_wire(), "data": [[str(ts), "10", "12", "9", "11", "5"]]})


class FakeSocket:
    """
    Stands in for a websockets connection: yields frames with a short pause
    between them (so the writer task gets to run), then stays open for linger
    seconds before closing.
    """

    def __init__(self, frames, linger=0.02):
        self.frames = list(frames)
        self.linger = linger
        self.sent = []
        self.close_code = 1000

    async def send(self, message):
        self.sent.append(message)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for raw in self.frames:
            await asyncio.sleep(0.01)
            yield raw
        await asyncio.sleep(self.linger)


class TestWebSocketTransport(unittest.TestCase):
    def test_send_while_disconnected_is_dropped(self):
        transport = WebSocketTransport("wss://example.invalid/ws")
        self.assertFalse(transport.connected)
        transport.send('{"op": "subscribe", "args": []}')
        self.assertTrue(transport._outbox.empty())

    def test_session_resubscribes_and_routes_frames(self):
        async def scenario():
            transport = WebSocketTransport("wss://example.invalid/ws", keepalive_seconds=60)
            router = SubscriptionRouter(transport, capacity=10)
            transport.listen(router.on_frame, router.on_transport_connected)

            # Registered before any connection: the requests are dropped here
            # and must be resent once the session starts.
            candles = router.subscribe(CANDLES)
            index = router.subscribe(INDEX)

            ws = FakeSocket([
                candle_frame(1000),
                json.dumps({"arg": INDEX.to_wire(), "data": [{"idxPx": "43000", "ts": "1000"}]}),
                candle_frame(1001),
            ])
            with self.assertRaises(TransportDisconnect):
                await transport._session(ws)
            return transport, ws, candles, index

        transport, ws, candles, index = asyncio.run(scenario())

        sent = [json.loads(m) for m in ws.sent]
        self.assertEqual([m["op"] for m in sent], ["subscribe", "subscribe"])
        self.assertEqual(
            sorted(m["args"][0]["channel"] for m in sent),
            ["index-tickers", "mark-price-candle1m"],
        )
        self.assertEqual([b.ts for b in candles.bars()], [1000, 1001])
        self.assertEqual([b.close for b in index.bars()], [43000.0])
        self.assertFalse(transport.connected)

    def test_every_connect_fires_on_connected(self):
        async def scenario():
            transport = WebSocketTransport("wss://example.invalid/ws", keepalive_seconds=60)
            router = SubscriptionRouter(transport, capacity=10)
            transport.listen(router.on_frame, router.on_transport_connected)
            router.subscribe(CANDLES)

            sockets = [FakeSocket([]), FakeSocket([])]
            for ws in sockets:
                with self.assertRaises(TransportDisconnect):
                    await transport._session(ws)
            return sockets

        for ws in asyncio.run(scenario()):
            self.assertEqual(
                [json.loads(m) for m in ws.sent],
                [{"op": "subscribe", "args": [CANDLES.to_wire()]}],
            )

    def test_frames_delivered_in_arrival_order(self):
        async def scenario():
            transport = WebSocketTransport("wss://example.invalid/ws", keepalive_seconds=60)
            received = []
            transport.listen(received.append, lambda: None)
            with self.assertRaises(TransportDisconnect):
                await transport._session(FakeSocket(["a", b"b", "c"]))
            return received

        self.assertEqual(asyncio.run(scenario()), ["a", "b", "c"])

    def test_idle_connection_sends_ping(self):
        async def scenario():
            transport = WebSocketTransport("wss://example.invalid/ws", keepalive_seconds=0.01)
            transport.listen(lambda raw: None, lambda: None)
            ws = FakeSocket([], linger=0.1)
            with self.assertRaises(TransportDisconnect):
                await transport._session(ws)
            return ws

        ws = asyncio.run(scenario())
        self.assertGreaterEqual(len(ws.sent), 2)
        self.assertEqual(set(ws.sent), {"ping"})

    def test_backoff_doubles_up_to_30s(self):
        transport = WebSocketTransport("wss://example.invalid/ws")
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)
            if len(delays) == 7:
                transport.close()

        with patch("app.feed.transport.websockets.connect", side_effect=OSError("refused")), \
                patch("app.feed.transport.asyncio.sleep", new=fake_sleep):
            with self.assertLogs("okx_transport", level="WARNING"):
                asyncio.run(transport.run())

        self.assertEqual(delays, [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0])


class TestLatestBars(unittest.TestCase):
    def test_lagging_client_gets_newest_only(self):
        async def scenario():
            latest = LatestBars()
            latest(bars(1))
            latest(bars(1, 2))
            latest(bars(1, 2, 3))
            return latest, await latest.get()

        latest, got = asyncio.run(scenario())
        self.assertEqual([b.ts for b in got], [1, 2, 3])
        self.assertEqual(latest.skipped, 2)


if __name__ == "__main__":
    unittest.main()
