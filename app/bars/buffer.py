from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence, Tuple

from app.bars.decode import decode_record
from app.errors import DecodeError
from app.models.market import Bar, MergePolicy, RoutingKey

DEFAULT_CAPACITY = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BarBuffer:
    """
    Bounded, time-ordered bars for one routing key.

    bars         -> immutable snapshot, oldest first (swapped whole on ingest)
    capacity     -> max bars kept; older ones are evicted FIFO
    merge_policy -> what to do with a record whose ts equals the newest bar's ts
    last_updated -> when an ingest last changed the bars
    evicted / stale_dropped -> running counters for diagnostics
    """

    def __init__(
        self,
        key: RoutingKey,
        capacity: int = DEFAULT_CAPACITY,
        merge_policy: MergePolicy = MergePolicy.APPEND_ALWAYS,
    ):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.key = key
        self.capacity = capacity
        self.merge_policy = merge_policy
        self.last_updated: Optional[datetime] = None
        self.evicted = 0
        self.stale_dropped = 0
        self._bars: Tuple[Bar, ...] = ()

    @property
    def bars(self) -> Tuple[Bar, ...]:
        return self._bars

    def __len__(self) -> int:
        return len(self._bars)

    def ingest(self, raw_records: Sequence[Any]) -> Tuple[Bar, ...]:
        """
        Decode and merge one batch. Returns the full current sequence.

        The whole batch is decoded before anything is merged, so a DecodeError
        leaves the buffer exactly as it was.
        """
        if not raw_records:
            return self._bars

        decoded: list[Bar] = []
        for i, record in enumerate(raw_records):
            try:
                decoded.append(decode_record(record))
            except DecodeError as e:
                raise DecodeError(f"{self.key} record {i}: {e}", index=i) from e

        bars = deque(self._bars, maxlen=self.capacity)
        evicted = 0
        stale = 0

        for bar in decoded:
            tail = bars[-1] if bars else None

            # Drop records older than what we already hold.
            if tail is not None and bar.ts < tail.ts:
                stale += 1
                continue

            if (
                tail is not None
                and bar.ts == tail.ts
                and self.merge_policy is MergePolicy.REPLACE_IF_EQUAL_TIMESTAMP
            ):
                bars[-1] = bar
                continue

            # deque(maxlen=...) drops the head on append once full.
            if len(bars) == self.capacity:
                evicted += 1
            bars.append(bar)

        self._bars = tuple(bars)
        self.evicted += evicted
        self.stale_dropped += stale
        if len(decoded) > stale:
            self.last_updated = utcnow()
        return self._bars

    def is_fresh(self, max_age_seconds: int) -> bool:
        """True if we hold bars and last changed them within max_age_seconds."""
        if not self._bars or self.last_updated is None:
            return False
        return (utcnow() - self.last_updated) <= timedelta(seconds=max_age_seconds)
