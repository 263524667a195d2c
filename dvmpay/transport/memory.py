"""
In-process relay.

Stores every published event and fans it out to matching live subscriptions.
Delivery is scheduled on the event loop (never inline in publish), one
subscription at a time in publish order, which gives the same per-relay FIFO
ordering a websocket relay does.
"""

import asyncio
import itertools
import logging
from typing import Dict, List, Optional, Sequence

from dvmpay.errors import NetworkError
from dvmpay.events import Event, Filter
from dvmpay.transport import Cancel, OnClosed, OnEvent, dedupe_newest_first

logger = logging.getLogger(__name__)


class _Subscription:
    def __init__(self, sub_id: str, filters: Sequence[Filter], on_event: OnEvent, on_closed: Optional[OnClosed] = None):
        self.sub_id = sub_id
        self.filters = list(filters)
        self.on_event = on_event
        self.on_closed = on_closed
        self.active = True

    def matches(self, event: Event) -> bool:
        return any(f.matches(event) for f in self.filters)

    def deliver(self, event: Event) -> None:
        if self.active:
            self.on_event(event)


class MemoryRelay:
    """A single relay living in this process."""

    def __init__(self, url: str = "memory://relay"):
        self.url = url
        self._events: Dict[str, Event] = {}
        self._subs: Dict[str, _Subscription] = {}
        self._ids = itertools.count(1)
        self.fail_with: Optional[str] = None
        self.close_count = 0

    @property
    def events(self) -> List[Event]:
        return list(self._events.values())

    @property
    def active_subscriptions(self) -> int:
        return len(self._subs)

    def _check_up(self, op: str) -> None:
        if self.fail_with:
            raise NetworkError(f"{op} failed on {self.url}: {self.fail_with}")

    async def publish(self, event: Event, relays: Optional[Sequence[str]] = None) -> None:
        self._check_up("publish")
        if event.id in self._events:
            return
        self._events[event.id] = event
        self._fan_out([event])

    def publish_batch(self, events: Sequence[Event]) -> None:
        """Store several events and deliver them together, as one network read."""
        fresh = [e for e in events if e.id not in self._events]
        for ev in fresh:
            self._events[ev.id] = ev
        self._fan_out(fresh)

    def redeliver(self, event: Event) -> None:
        """Send an already-stored event again (at-least-once delivery)."""
        self._fan_out([event])

    def _fan_out(self, events: Sequence[Event]) -> None:
        loop = asyncio.get_running_loop()
        for ev in events:
            for sub in list(self._subs.values()):
                if sub.matches(ev):
                    loop.call_soon(sub.deliver, ev)

    async def query(self, filters: Sequence[Filter], relays: Optional[Sequence[str]] = None) -> List[Event]:
        self._check_up("query")
        found = [ev for ev in self._events.values() if any(f.matches(ev) for f in filters)]
        return dedupe_newest_first(found)

    async def subscribe(
        self,
        filters: Sequence[Filter],
        on_event: OnEvent,
        relays: Optional[Sequence[str]] = None,
        on_closed: Optional[OnClosed] = None,
    ) -> Cancel:
        self._check_up("subscribe")
        sub = _Subscription(f"mem{next(self._ids)}", filters, on_event, on_closed)
        self._subs[sub.sub_id] = sub
        loop = asyncio.get_running_loop()
        for ev in list(self._events.values()):
            if sub.matches(ev):
                loop.call_soon(sub.deliver, ev)

        def cancel() -> None:
            if not sub.active:
                return
            sub.active = False
            self._subs.pop(sub.sub_id, None)
            self.close_count += 1
            logger.debug("closed subscription %s", sub.sub_id)

        return cancel

    def drop_subscriptions(self, reason: str = "connection closed") -> None:
        """Close every live subscription from the relay side, as a dropped socket would."""
        loop = asyncio.get_running_loop()
        for sub in list(self._subs.values()):
            sub.active = False
            if sub.on_closed is not None:
                loop.call_soon(sub.on_closed, f"{self.url}: {reason}")
        self._subs.clear()
