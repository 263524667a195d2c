"""
Relay transport: publish, one-shot query, and live subscribe.

RelayPool talks NIP-01 over websockets; MemoryRelay is an in-process relay
with the same interface for local runs and tests.
"""

from typing import Callable, List, Optional, Protocol, Sequence

from dvmpay.events import Event, Filter

OnEvent = Callable[[Event], None]
OnClosed = Callable[[str], None]
Cancel = Callable[[], None]


class Transport(Protocol):
    async def publish(self, event: Event, relays: Optional[Sequence[str]] = None) -> None:
        ...

    async def query(self, filters: Sequence[Filter], relays: Optional[Sequence[str]] = None) -> List[Event]:
        ...

    async def subscribe(
        self,
        filters: Sequence[Filter],
        on_event: OnEvent,
        relays: Optional[Sequence[str]] = None,
        on_closed: Optional[OnClosed] = None,
    ) -> Cancel:
        """
        Live subscription. on_closed(reason) fires at most once, when every
        relay has dropped the subscription without the caller cancelling it.
        """
        ...


def dedupe_newest_first(events: Sequence[Event]) -> List[Event]:
    """Drop duplicate ids, newest created_at first."""
    seen = {}
    for ev in events:
        seen.setdefault(ev.id, ev)
    return sorted(seen.values(), key=lambda e: (e.created_at, e.id), reverse=True)


from dvmpay.transport.memory import MemoryRelay  # noqa: E402
from dvmpay.transport.relay import RelayPool  # noqa: E402

__all__ = [
    "Cancel",
    "OnClosed",
    "OnEvent",
    "Transport",
    "dedupe_newest_first",
    "MemoryRelay",
    "RelayPool",
]
