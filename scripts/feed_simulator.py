from __future__ import annotations

import json
import random
import time

from app.feed.router import SubscriptionRouter
from app.feed.transport import Transport
from app.models.market import MergePolicy, RoutingKey


class PrintTransport(Transport):
    """Offline transport: prints what would go over the wire."""

    @property
    def connected(self) -> bool:
        return True

    def send(self, message: str) -> None:
        print("SEND", message)


def run(frames: int = 300, capacity: int = 50) -> None:
    """
    Feeds fake candle frames through the router and prints buffer state.

    - One frame per simulated second, 1m candles.
    - The in-progress candle is re-sent every second (same ts), so the
      replace-if-equal-timestamp policy keeps one bar per minute.
    - Every 50th frame is garbage, to show it being dropped.
    """
    key = RoutingKey("mark-price-candle1m", "BTC-USD-SWAP")
    router = SubscriptionRouter(PrintTransport(), capacity=capacity)

    handle = router.subscribe(key, merge_policy=MergePolicy.REPLACE_IF_EQUAL_TIMESTAMP)
    handle.subscribe(lambda bars: None)
    router.on_transport_connected()

    start_ms = int(time.time() // 60 * 60 * 1000)
    price = 100.0
    o = h = l = price

    print(f"Simulating {frames} frames for {key}...\n")

    for i in range(frames):
        if i % 50 == 49:
            router.on_frame("not json")
            continue

        minute = i // 60
        if i % 60 == 0:
            o = h = l = price
        price += random.uniform(-0.2, 0.2)
        h, l = max(h, price), min(l, price)

        ts = start_ms + minute * 60_000
        frame = {
            "arg": key.to_wire(),
            "data": [[str(ts), f"{o:.2f}", f"{h:.2f}", f"{l:.2f}", f"{price:.2f}", "0"]],
        }
        router.on_frame(json.dumps(frame))

    bars = handle.bars()
    print("\nDone.")
    print(f"Bars stored: {len(bars)} (capacity {capacity})")
    for bar in bars[-3:]:
        print(f"  ts={bar.ts} O={bar.open} H={bar.high} L={bar.low} C={bar.close}")
    print(f"Router stats: {router.stats()}")


if __name__ == "__main__":
    run()
