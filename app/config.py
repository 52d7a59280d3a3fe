# app/config.py
import os
from dataclasses import dataclass
from dotenv import load_dotenv

from app.errors import ConfigError
from app.models.market import MergePolicy, RoutingKey

# Loads variables from a local .env file into environment variables (dev only).
load_dotenv()

DEFAULT_WS_URL = "wss://wspap.okx.com:8443/ws/v5/business?brokerId=9999"


@dataclass(frozen=True)
class Settings:
    # App config
    app_env: str
    log_level: str

    # Feed config (OKX v5 websocket)
    okx_ws_url: str
    feed_streams: list[RoutingKey]
    ws_ping_interval: float
    ws_keepalive_seconds: float

    # Buffer config
    bar_capacity: int
    merge_policy: MergePolicy
    freshness_seconds: int


def _parse_streams(raw: str) -> list[RoutingKey]:
    keys: list[RoutingKey] = []
    for part in raw.split(","):
        if not part.strip():
            continue
        try:
            key = RoutingKey.parse(part)
        except ValueError as e:
            raise ConfigError(f"FEED_STREAMS: {e}") from e
        if key not in keys:
            keys.append(key)
    return keys


def _parse_positive(name: str, default: str, cast=int):
    raw = os.getenv(name, default).strip()
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def get_settings() -> Settings:
    """
    Reads env vars and returns a Settings object.
    """
    policy_raw = os.getenv("MERGE_POLICY", MergePolicy.APPEND_ALWAYS.value).strip().lower()
    try:
        merge_policy = MergePolicy(policy_raw)
    except ValueError as e:
        allowed = ", ".join(p.value for p in MergePolicy)
        raise ConfigError(f"Unknown MERGE_POLICY='{policy_raw}'. Expected one of: {allowed}") from e

    return Settings(
        app_env=os.getenv("APP_ENV", "local"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        okx_ws_url=os.getenv("OKX_WS_URL", DEFAULT_WS_URL).strip(),
        feed_streams=_parse_streams(os.getenv("FEED_STREAMS", "mark-price-candle1m:BTC-USD-SWAP")),
        ws_ping_interval=_parse_positive("WS_PING_INTERVAL", "20", float),
        ws_keepalive_seconds=_parse_positive("WS_KEEPALIVE_SECONDS", "25", float),
        bar_capacity=_parse_positive("BAR_CAPACITY", "2000"),
        merge_policy=merge_policy,
        freshness_seconds=_parse_positive("FRESHNESS_SECONDS", "120"),
    )
