from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional


@dataclass(frozen=True)
class RoutingKey:
    """
    RoutingKey = one stream on the feed.

    channel: feed channel, e.g. "mark-price-candle1m" or "index-tickers"
    inst_id: instrument id, e.g. "BTC-USD-SWAP"
    """
    channel: str
    inst_id: str

    @classmethod
    def parse(cls, text: str) -> "RoutingKey":
        """Parse the "channel:instId" text form used in config."""
        channel, sep, inst_id = text.strip().partition(":")
        channel = channel.strip()
        inst_id = inst_id.strip()
        if not sep or not channel or not inst_id:
            raise ValueError(f"Expected 'channel:instId', got {text!r}")
        return cls(channel=channel, inst_id=inst_id)

    def to_wire(self) -> Dict[str, str]:
        return {"channel": self.channel, "instId": self.inst_id}

    def __str__(self) -> str:
        return f"{self.channel}:{self.inst_id}"


@dataclass(frozen=True)
class Bar:
    """
    Bar = one OHLCV sample.

    ts: milliseconds since epoch (ordering key)
    open/high/low/close: prices; ticker/index channels only carry close
    volume: traded volume, None when the channel has none
    """
    ts: int
    open: Optional[float]
    high: Optional[float]
    low: Optional[float]
    close: float
    volume: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "ts": self.ts,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


class MergePolicy(str, Enum):
    """How a record with the same ts as the newest bar is merged."""

    APPEND_ALWAYS = "append-always"
    REPLACE_IF_EQUAL_TIMESTAMP = "replace-if-equal-timestamp"


def subscription_request(keys: Iterable[RoutingKey], op: str = "subscribe") -> str:
    """Build the outbound {"op": ..., "args": [...]} message as JSON text."""
    return json.dumps({"op": op, "args": [k.to_wire() for k in keys]})
