from __future__ import annotations

import json

from app.feed.transport import Transport


class RecordingTransport(Transport):
    """Transport double: records every outbound message, never touches the network."""

    def __init__(self, connected: bool = True) -> None:
        super().__init__()
        self.sent: list[str] = []
        self._connected = connected

    @property
    def connected(self) -> bool:
        return self._connected

    def send(self, message: str) -> None:
        self.sent.append(message)

    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    def deliver(self, frame: dict | str) -> None:
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        self._on_frame(raw)

    def reconnect(self) -> None:
        self._on_connected()
