from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional

from app.config import Settings
from app.feed.router import FeedHandle, SubscriptionRouter
from app.feed.transport import Transport, WebSocketTransport
from app.models.market import RoutingKey


@dataclass
class FeedState:
    """
    Everything the running process owns, built once per app.

    handles: streams held open by config or POST /streams (websocket
      clients hold their own handles and release them on disconnect)
    """
    settings: Settings
    transport: Transport
    router: SubscriptionRouter
    handles: Dict[RoutingKey, FeedHandle] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None

    def hold(self, key: RoutingKey) -> FeedHandle:
        handle = self.handles.get(key)
        if handle is None:
            handle = self.router.subscribe(key)
            self.handles[key] = handle
        return handle

    def release(self, key: RoutingKey) -> bool:
        handle = self.handles.pop(key, None)
        if handle is None:
            return False
        handle.unsubscribe()
        return True


def build_state(settings: Settings, transport: Optional[Transport] = None) -> FeedState:
    if transport is None:
        transport = WebSocketTransport(
            settings.okx_ws_url,
            ping_interval=settings.ws_ping_interval,
            keepalive_seconds=settings.ws_keepalive_seconds,
        )

    router = SubscriptionRouter(
        transport,
        capacity=settings.bar_capacity,
        merge_policy=settings.merge_policy,
    )
    transport.listen(on_frame=router.on_frame, on_connected=router.on_transport_connected)

    state = FeedState(settings=settings, transport=transport, router=router)
    for key in settings.feed_streams:
        state.hold(key)
    return state
