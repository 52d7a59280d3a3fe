from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from app.bars.buffer import DEFAULT_CAPACITY, BarBuffer
from app.bars.fanout import OnUpdate, Publisher, SubscriptionToken
from app.errors import DecodeError, FrameParseError
from app.feed.transport import Transport
from app.models.market import Bar, MergePolicy, RoutingKey, subscription_request

log = logging.getLogger("feed_router")


def load_frame(raw: str) -> Dict[str, Any]:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameParseError(f"not JSON: {raw!r:.80}") from e
    if not isinstance(msg, dict):
        raise FrameParseError(f"not an object: {type(msg).__name__}")
    return msg


def parse_frame(msg: Dict[str, Any]) -> Tuple[RoutingKey, List[Any]]:
    """
    Split a loaded frame into (routing key, raw records).

    Raises FrameParseError for anything that is not
      {"arg": {"channel": ..., "instId": ...}, "data": [...]}
    A missing or null data field comes back as [].
    """
    arg = msg.get("arg")
    if not isinstance(arg, dict):
        raise FrameParseError("missing arg")

    channel = arg.get("channel")
    inst_id = arg.get("instId")
    if not isinstance(channel, str) or not isinstance(inst_id, str):
        raise FrameParseError("missing arg.channel/arg.instId")

    data = msg.get("data")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise FrameParseError(f"data is {type(data).__name__}, expected list")

    return RoutingKey(channel=channel, inst_id=inst_id), data


@dataclass
class _Stream:
    """One buffer + its publisher, shared by every handle with the same config."""
    buffer: BarBuffer
    publisher: Publisher
    handles: Set["FeedHandle"] = field(default_factory=set)
    released: bool = False


class FeedHandle:
    """
    One registered interest in a routing key.

    Use subscribe() to attach render consumers and unsubscribe() to let go;
    the underlying buffer is discarded once its last handle is released.
    """

    def __init__(self, router: "SubscriptionRouter", key: RoutingKey, stream: _Stream):
        self._router = router
        self._stream = stream
        self._tokens: List[SubscriptionToken] = []
        self.key = key
        self.active = True

    @property
    def buffer(self) -> BarBuffer:
        return self._stream.buffer

    def bars(self) -> Tuple[Bar, ...]:
        return self._stream.buffer.bars

    def subscribe(self, on_update: OnUpdate) -> SubscriptionToken:
        if not self.active:
            raise RuntimeError(f"handle for {self.key} was unsubscribed")
        token = self._stream.publisher.subscribe(on_update)
        self._tokens.append(token)
        return token

    def detach(self, token: SubscriptionToken) -> bool:
        """Detach one consumer attached through this handle."""
        if token in self._tokens:
            self._tokens.remove(token)
        return self._stream.publisher.unsubscribe(token)

    def unsubscribe(self) -> None:
        """Release this interest. Idempotent; safe inside an on_update callback."""
        if not self.active:
            return
        self.active = False
        for token in self._tokens:
            self._stream.publisher.unsubscribe(token)
        self._tokens.clear()
        self._router._release(self)


class SubscriptionRouter:
    """
    Routes inbound frames to the bar buffers registered for their key and
    keeps the transport's subscriptions in step with those registrations.
    """

    def __init__(
        self,
        transport: Transport,
        capacity: int = DEFAULT_CAPACITY,
        merge_policy: MergePolicy = MergePolicy.APPEND_ALWAYS,
    ):
        self.transport = transport
        self.capacity = capacity
        self.merge_policy = merge_policy
        self._streams: Dict[RoutingKey, List[_Stream]] = {}
        self._stats = {
            "frames": 0,
            "dropped": 0,
            "routing_misses": 0,
            "delivered": 0,
            "decode_errors": 0,
        }

    def keys(self) -> List[RoutingKey]:
        return list(self._streams)

    def buffers(self, key: RoutingKey) -> List[BarBuffer]:
        return [s.buffer for s in self._streams.get(key, [])]

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def subscribe(
        self,
        key: RoutingKey,
        capacity: Optional[int] = None,
        merge_policy: Optional[MergePolicy] = None,
    ) -> FeedHandle:
        """
        Register interest in key. The first interest in a key sends a
        subscribe request over the transport.
        """
        if capacity is None:
            capacity = self.capacity
        if merge_policy is None:
            merge_policy = self.merge_policy

        first = key not in self._streams
        streams = self._streams.get(key, [])

        stream = next(
            (
                s for s in streams
                if s.buffer.capacity == capacity and s.buffer.merge_policy is merge_policy
            ),
            None,
        )
        if stream is None:
            # BarBuffer validates capacity; nothing is registered if it raises.
            stream = _Stream(
                buffer=BarBuffer(key, capacity=capacity, merge_policy=merge_policy),
                publisher=Publisher(name=str(key)),
            )
            self._streams.setdefault(key, []).append(stream)

        handle = FeedHandle(self, key, stream)
        stream.handles.add(handle)

        if first:
            log.info("Subscribing %s", key)
            self.transport.send(subscription_request([key]))
        return handle

    def _release(self, handle: FeedHandle) -> None:
        key = handle.key
        stream = handle._stream
        stream.handles.discard(handle)
        if stream.handles:
            return

        stream.released = True
        streams = self._streams.get(key, [])
        if stream in streams:
            streams.remove(stream)
        if not streams:
            self._streams.pop(key, None)
            log.info("Unsubscribing %s", key)
            self.transport.send(subscription_request([key], op="unsubscribe"))

    def on_transport_connected(self) -> int:
        """Resend one subscribe request per registered key. Returns how many were sent."""
        keys = self.keys()
        for key in keys:
            self.transport.send(subscription_request([key]))
        log.warning("Transport connected, resubscribed keys=%s", [str(k) for k in keys])
        return len(keys)

    def on_frame(self, raw: str) -> int:
        """
        Handle one inbound frame: parse, route, ingest, publish.
        Never raises. Returns the number of buffers that took the data.
        """
        self._stats["frames"] += 1

        try:
            msg = load_frame(raw)
            # OKX acks/errors: {"event": "subscribe"|"unsubscribe"|"error", ...}
            if "event" in msg:
                if msg["event"] == "error":
                    log.warning("Feed error event code=%s msg=%s", msg.get("code"), msg.get("msg"))
                else:
                    log.info("Feed event=%s arg=%s", msg["event"], msg.get("arg"))
                return 0
            key, records = parse_frame(msg)
        except FrameParseError as e:
            self._stats["dropped"] += 1
            log.debug("Dropping frame: %s", e)
            return 0

        streams = self._streams.get(key)
        if not streams:
            self._stats["routing_misses"] += 1
            return 0

        if not records:
            return 0

        delivered = 0
        for stream in list(streams):
            if stream.released:
                continue
            try:
                bars = stream.buffer.ingest(records)
            except DecodeError as e:
                self._stats["decode_errors"] += 1
                log.warning("Rejected batch for %s: %s", key, e)
                continue
            stream.publisher.publish(bars)
            delivered += 1

        self._stats["delivered"] += delivered
        return delivered
