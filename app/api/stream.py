from __future__ import annotations

import asyncio
from typing import Sequence, Tuple

from fastapi import WebSocket

from app.models.api import BarOut
from app.models.market import Bar, RoutingKey


class LatestBars:
    """
    Fan-out consumer for one websocket client.

    Holds only the newest full sequence: every update replaces the whole
    series on the client, so a lagging client skips straight to the latest.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Tuple[Bar, ...]] = asyncio.Queue(maxsize=1)
        self.skipped = 0

    def __call__(self, bars: Sequence[Bar]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.skipped += 1
        self._queue.put_nowait(tuple(bars))

    async def get(self) -> Tuple[Bar, ...]:
        return await self._queue.get()


def bars_message(key: RoutingKey, bars: Sequence[Bar]) -> dict:
    return {
        "channel": key.channel,
        "instId": key.inst_id,
        "bars": [BarOut.from_bar(b).model_dump() for b in bars],
    }


async def wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        msg = await websocket.receive()
        if msg["type"] == "websocket.disconnect":
            return


async def pump_updates(websocket: WebSocket, key: RoutingKey, latest: LatestBars) -> None:
    """Send each update to the client until it disconnects."""
    receiver = asyncio.create_task(wait_for_disconnect(websocket))
    try:
        while True:
            getter = asyncio.create_task(latest.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                return
            await websocket.send_json(bars_message(key, getter.result()))
    finally:
        receiver.cancel()
