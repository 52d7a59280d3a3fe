from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

import websockets

from app.errors import TransportDisconnect

log = logging.getLogger("okx_transport")

FrameListener = Callable[[str], None]
ConnectListener = Callable[[], None]


class Transport(ABC):
    """
    Transport contract (interface).

    Any transport must:
    - send(): queue one outbound text message
    - deliver inbound text frames, in arrival order, to the frame listener
    - call the connect listener after every completed (re)connect, so
      subscriptions can be sent again
    """

    def __init__(self) -> None:
        self._on_frame: Optional[FrameListener] = None
        self._on_connected: Optional[ConnectListener] = None

    def listen(self, on_frame: FrameListener, on_connected: ConnectListener) -> None:
        self._on_frame = on_frame
        self._on_connected = on_connected

    @property
    @abstractmethod
    def connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def send(self, message: str) -> None:
        raise NotImplementedError


class WebSocketTransport(Transport):
    """
    OKX v5 websocket transport.

    - one connection at a time, reconnecting with exponential backoff (1s -> 30s)
    - outbound messages go through a queue drained by a writer task
    - sends a text "ping" when nothing was sent for keepalive_seconds
      (OKX closes connections idle for 30s)
    """

    def __init__(
        self,
        url: str,
        ping_interval: float = 20,
        keepalive_seconds: float = 25,
    ) -> None:
        super().__init__()
        self.url = url
        self.ping_interval = ping_interval
        self.keepalive_seconds = keepalive_seconds
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    def send(self, message: str) -> None:
        # Anything sent while down is dropped; the router resubscribes on connect.
        if not self._connected:
            log.debug("OKX WS not connected, dropping outbound msg=%s", message)
            return
        self._outbox.put_nowait(message)

    def close(self) -> None:
        self._closed = True

    def _drain_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()

    async def _write_loop(self, ws) -> None:
        while True:
            try:
                message = await asyncio.wait_for(self._outbox.get(), timeout=self.keepalive_seconds)
            except asyncio.TimeoutError:
                message = "ping"
            await ws.send(message)

    async def _session(self, ws) -> None:
        self._drain_outbox()
        self._connected = True
        if self._on_connected is not None:
            self._on_connected()

        writer = asyncio.create_task(self._write_loop(ws))
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                if self._on_frame is not None:
                    self._on_frame(raw)
        finally:
            self._connected = False
            writer.cancel()

        if writer.done() and not writer.cancelled() and writer.exception() is not None:
            raise TransportDisconnect(f"writer failed: {writer.exception()}")
        raise TransportDisconnect(f"closed code={ws.close_code}")

    async def run(self) -> None:
        """Connect, pump frames, reconnect on any failure until close() is called."""
        backoff = 1.0

        while not self._closed:
            try:
                async with websockets.connect(
                    self.url,
                    ping_interval=self.ping_interval,
                    ping_timeout=self.ping_interval,
                ) as ws:
                    log.warning("OKX WS connected url=%s", self.url)
                    backoff = 1.0
                    await self._session(ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("OKX WS error: %s", e)

            if self._closed:
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 30.0)
