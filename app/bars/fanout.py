from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Sequence

from app.models.market import Bar

log = logging.getLogger("fanout")

OnUpdate = Callable[[Sequence[Bar]], None]


@dataclass(frozen=True, eq=False)
class SubscriptionToken:
    """
    Returned by Publisher.subscribe(); pass it back to unsubscribe().
    Compared by identity, so a token only ever matches its own publisher.
    """
    id: int


class Publisher:
    """
    Fan-out of one buffer's updates to N render consumers.

    Every consumer gets the full current sequence after each completed ingest
    and is expected to replace what it renders.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._consumers: Dict[SubscriptionToken, OnUpdate] = {}
        self._token_ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._consumers)

    def subscribe(self, on_update: OnUpdate) -> SubscriptionToken:
        token = SubscriptionToken(next(self._token_ids))
        self._consumers[token] = on_update
        return token

    def unsubscribe(self, token: SubscriptionToken) -> bool:
        """Detach a consumer. Safe to call from inside a callback. Returns False if unknown."""
        return self._consumers.pop(token, None) is not None

    def publish(self, bars: Sequence[Bar]) -> int:
        """
        Deliver bars to every attached consumer. Returns how many returned without raising.

        Iterates over a snapshot so callbacks may (un)subscribe freely;
        a consumer detached earlier in this round is skipped.
        """
        delivered = 0
        for token, on_update in list(self._consumers.items()):
            if token not in self._consumers:
                continue
            try:
                on_update(bars)
            except Exception:
                # One broken consumer must not starve the others.
                log.exception("Consumer %s of %s failed", token.id, self.name)
                continue
            delivered += 1
        return delivered
