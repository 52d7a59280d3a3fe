from __future__ import annotations

import math
from typing import Any, Optional

from app.errors import DecodeError
from app.models.market import Bar

# Named-field records (ticker/index channels): first key present wins.
CLOSE_FIELDS = ("idxPx", "markPx", "last", "close", "c")
OPEN_FIELDS = ("open", "o")
HIGH_FIELDS = ("high", "h")
LOW_FIELDS = ("low", "l")
VOLUME_FIELDS = ("vol", "volume", "v")


def _parse_ts(raw: Any) -> int:
    """Timestamps arrive as integer strings ("1700000000000") or ints."""
    if isinstance(raw, bool) or raw is None:
        raise DecodeError(f"bad timestamp {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        if not raw.is_integer():
            raise DecodeError(f"bad timestamp {raw!r}")
        return int(raw)
    try:
        return int(str(raw).strip())
    except ValueError as e:
        raise DecodeError(f"bad timestamp {raw!r}") from e


def _parse_number(raw: Any, field: str) -> float:
    if isinstance(raw, bool) or raw is None:
        raise DecodeError(f"bad {field} {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"bad {field} {raw!r}") from e
    if not math.isfinite(value):
        raise DecodeError(f"non-finite {field} {raw!r}")
    return value


def _parse_optional(raw: Any, field: str) -> Optional[float]:
    if raw is None or raw == "":
        return None
    return _parse_number(raw, field)


def _parse_volume(raw: Any) -> Optional[float]:
    volume = _parse_optional(raw, "volume")
    if volume is not None and volume < 0:
        raise DecodeError(f"negative volume {raw!r}")
    return volume


def _first(record: dict, fields: tuple[str, ...]) -> Any:
    for name in fields:
        if name in record:
            return record[name]
    return None


def decode_positional(record: list | tuple) -> Bar:
    """
    Candle channels send [ts, open, high, low, close, volume, ...].
    Volume is optional; trailing fields are ignored.
    """
    if len(record) < 5:
        raise DecodeError(f"candle record needs at least 5 fields, got {len(record)}")

    return Bar(
        ts=_parse_ts(record[0]),
        open=_parse_number(record[1], "open"),
        high=_parse_number(record[2], "high"),
        low=_parse_number(record[3], "low"),
        close=_parse_number(record[4], "close"),
        volume=_parse_volume(record[5]) if len(record) > 5 else None,
    )


def decode_named(record: dict) -> Bar:
    """
    Ticker/index channels send objects, e.g. {"instId": ..., "idxPx": "...", "ts": "..."}.
    Only close is required; open/high/low/volume are picked up when present.
    """
    if "ts" not in record:
        raise DecodeError("record has no 'ts'")

    close = _first(record, CLOSE_FIELDS)
    if close is None:
        raise DecodeError(f"record has no close field (tried {', '.join(CLOSE_FIELDS)})")

    return Bar(
        ts=_parse_ts(record["ts"]),
        open=_parse_optional(_first(record, OPEN_FIELDS), "open"),
        high=_parse_optional(_first(record, HIGH_FIELDS), "high"),
        low=_parse_optional(_first(record, LOW_FIELDS), "low"),
        close=_parse_number(close, "close"),
        volume=_parse_volume(_first(record, VOLUME_FIELDS)),
    )


def decode_record(record: Any) -> Bar:
    """Decode one raw per-bar record of either shape. Raises DecodeError."""
    if isinstance(record, (list, tuple)):
        return decode_positional(record)
    if isinstance(record, dict):
        return decode_named(record)
    raise DecodeError(f"unsupported record type {type(record).__name__}")
