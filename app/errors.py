from __future__ import annotations

from enum import Enum


class FeedErrorCode(Enum):
    """Error classification codes."""

    TRANSPORT_DISCONNECT = "transport_disconnect"
    FRAME_PARSE = "frame_parse"
    DECODE = "decode"
    CONFIG = "config"


class FeedError(Exception):
    """Base error for the live bar feed, tagged with a code."""

    def __init__(self, message: str, code: FeedErrorCode) -> None:
        super().__init__(message)
        self.code = code


class TransportDisconnect(FeedError):
    """Websocket connection dropped; the transport reconnects on its own."""

    def __init__(self, message: str) -> None:
        super().__init__(message, FeedErrorCode.TRANSPORT_DISCONNECT)


class FrameParseError(FeedError):
    """Inbound frame is not JSON or has no usable routing arg."""

    def __init__(self, message: str) -> None:
        super().__init__(message, FeedErrorCode.FRAME_PARSE)


class DecodeError(FeedError):
    """
    A raw bar record could not be decoded.

    index: position of the offending record inside the batch (None when
      decoding a single record outside a batch)
    """

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message, FeedErrorCode.DECODE)
        self.index = index


class ConfigError(FeedError):
    def __init__(self, message: str) -> None:
        super().__init__(message, FeedErrorCode.CONFIG)
