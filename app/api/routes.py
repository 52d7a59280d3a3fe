from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from app.api.stream import LatestBars, bars_message, pump_updates
from app.models.api import BarOut, BarsResponse, StreamStatus
from app.models.market import RoutingKey
from app.state import FeedState

router = APIRouter()
log = logging.getLogger("api")

# Handlers touching the router are async so they run on the event loop,
# in between frames, never concurrently with on_frame.


def _state(request: Request) -> FeedState:
    return request.app.state.feed


def _key(channel: str, inst_id: str) -> RoutingKey:
    return RoutingKey(channel=channel, inst_id=inst_id)


@router.get("/streams", response_model=list[StreamStatus])
async def list_streams(request: Request):
    """Every buffer currently registered, with size and freshness."""
    state = _state(request)
    freshness = state.settings.freshness_seconds
    return [
        StreamStatus.from_buffer(buf, freshness)
        for key in state.router.keys()
        for buf in state.router.buffers(key)
    ]


@router.post("/streams", response_model=StreamStatus)
async def hold_stream(
    request: Request,
    channel: str = Query(..., description="Feed channel, e.g. mark-price-candle1m"),
    inst_id: str = Query(..., description="Instrument id, e.g. BTC-USD-SWAP"),
):
    """Keep a stream subscribed until DELETE /streams releases it."""
    state = _state(request)
    handle = state.hold(_key(channel, inst_id))
    return StreamStatus.from_buffer(handle.buffer, state.settings.freshness_seconds)


@router.delete("/streams")
async def release_stream(
    request: Request,
    channel: str = Query(...),
    inst_id: str = Query(...),
):
    key = _key(channel, inst_id)
    if not _state(request).release(key):
        raise HTTPException(status_code=404, detail=f"stream {key} is not held")
    return {"ok": True, "released": str(key)}


@router.get("/bars", response_model=BarsResponse)
async def get_bars(
    request: Request,
    channel: str = Query(...),
    inst_id: str = Query(...),
    limit: int = Query(0, ge=0, description="Newest N bars only (0 = all)"),
):
    state = _state(request)
    key = _key(channel, inst_id)
    buffers = state.router.buffers(key)
    if not buffers:
        raise HTTPException(status_code=404, detail=f"no buffer for {key}")

    buffer = buffers[0]
    bars = buffer.bars
    if limit:
        bars = bars[-limit:]

    return BarsResponse(
        stream=StreamStatus.from_buffer(buffer, state.settings.freshness_seconds),
        bars=[BarOut.from_bar(b) for b in bars],
    )


@router.post("/dev/inject_frame")
async def dev_inject_frame(request: Request):
    """
    Dev-only helper:
    Feeds ONE raw frame (request body, as sent by the feed) through the router.
    """
    state = _state(request)
    raw = (await request.body()).decode("utf-8", errors="replace")
    delivered = state.router.on_frame(raw)
    return {"ok": True, "delivered": delivered, "stats": state.router.stats()}


@router.websocket("/ws/bars")
async def ws_bars(websocket: WebSocket, channel: str, inst_id: str):
    """
    Live stream for one key:
    sends the current bars on connect, then the full sequence after every update.
    """
    state: FeedState = websocket.app.state.feed
    key = _key(channel, inst_id)

    await websocket.accept()
    handle = state.router.subscribe(key)
    latest = LatestBars()
    handle.subscribe(latest)
    try:
        await websocket.send_json(bars_message(key, handle.bars()))
        await pump_updates(websocket, key, latest)
    except WebSocketDisconnect:
        pass
    finally:
        handle.unsubscribe()
        log.info("WS client left key=%s skipped_updates=%d", key, latest.skipped)
