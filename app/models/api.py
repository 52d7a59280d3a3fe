from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from app.bars.buffer import BarBuffer
from app.models.market import Bar


class BarOut(BaseModel):
    ts: int
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: float
    volume: Optional[float] = None

    @classmethod
    def from_bar(cls, bar: Bar) -> "BarOut":
        return cls(**bar.to_dict())


class StreamStatus(BaseModel):
    """
    One buffer as seen from the API.

    fresh: bars present and updated within FRESHNESS_SECONDS
    evicted / stale_dropped: how many bars left by capacity / arrived too old
    """

    channel: str
    inst_id: str
    size: int
    capacity: int
    merge_policy: str
    last_updated: Optional[datetime] = None
    fresh: bool
    evicted: int
    stale_dropped: int

    @classmethod
    def from_buffer(cls, buffer: BarBuffer, freshness_seconds: int) -> "StreamStatus":
        return cls(
            channel=buffer.key.channel,
            inst_id=buffer.key.inst_id,
            size=len(buffer),
            capacity=buffer.capacity,
            merge_policy=buffer.merge_policy.value,
            last_updated=buffer.last_updated,
            fresh=buffer.is_fresh(freshness_seconds),
            evicted=buffer.evicted,
            stale_dropped=buffer.stale_dropped,
        )


class BarsResponse(BaseModel):
    stream: StreamStatus
    bars: List[BarOut]
