"""
Websocket relay pool (NIP-01).

Client → relay:  ["EVENT", ev]  ["REQ", sub_id, filter...]  ["CLOSE", sub_id]
Relay → client:  ["EVENT", sub_id, ev]  ["EOSE", sub_id]  ["OK", id, bool, msg]
                 ["CLOSED", sub_id, msg]  ["NOTICE", msg]

One connection per relay URL, opened lazily and shared by every query and
subscription. Failures surface as NetworkError; nothing here retries.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import websockets
from pydantic import ValidationError as PydanticValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from dvmpay.errors import NetworkError
from dvmpay.events import Event, Filter
from dvmpay.transport import Cancel, OnClosed, OnEvent, dedupe_newest_first

logger = logging.getLogger(__name__)

DEFAULT_RELAYS = ["wss://nos.lol", "wss://relay.damus.io"]

MessageHandler = Callable[[List[Any]], None]


@dataclass
class _RelayConnection:
    url: str
    open_timeout: float = 5.0
    _ws: Any = field(init=False, default=None)
    _reader: Optional[asyncio.Task] = field(init=False, default=None)
    _handlers: Dict[str, MessageHandler] = field(init=False, default_factory=dict)
    _ok_waiters: Dict[str, asyncio.Future] = field(init=False, default_factory=dict)
    _connect_lock: asyncio.Lock = field(init=False, default_factory=asyncio.Lock)

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def ensure_open(self) -> None:
        async with self._connect_lock:
            if self.is_open:
                return
            try:
                self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                self._ws = None
                raise NetworkError(f"Cannot connect to relay {self.url}: {e}", cause=e) from e
            self._reader = asyncio.create_task(self._read_loop(), name=f"relay-reader:{self.url}")
            logger.debug("connected to %s", self.url)

    async def send(self, message: List[Any]) -> None:
        await self.ensure_open()
        try:
            await self._ws.send(json.dumps(message, separators=(",", ":"), ensure_ascii=False))
        except (ConnectionClosed, OSError) as e:
            raise NetworkError(f"Send to {self.url} failed: {e}", cause=e) from e

    def add_handler(self, sub_id: str, handler: MessageHandler) -> None:
        self._handlers[sub_id] = handler

    def remove_handler(self, sub_id: str) -> None:
        self._handlers.pop(sub_id, None)

    def expect_ok(self, event_id: str) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._ok_waiters[event_id] = fut
        return fut

    def drop_ok(self, event_id: str) -> None:
        self._ok_waiters.pop(event_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.info("relay %s closed: %s", self.url, e)
        finally:
            self._on_closed()

    def _dispatch(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("non-JSON frame from %s dropped", self.url)
            return
        if not isinstance(msg, list) or not msg:
            return
        kind = msg[0]
        if kind in ("EVENT", "EOSE", "CLOSED") and len(msg) >= 2:
            handler = self._handlers.get(msg[1])
            if handler is not None:
                self._call(handler, msg)
        elif kind == "OK" and len(msg) >= 3:
            fut = self._ok_waiters.pop(msg[1], None)
            if fut is not None and not fut.done():
                fut.set_result((bool(msg[2]), msg[3] if len(msg) > 3 else ""))
        elif kind == "NOTICE":
            logger.info("NOTICE from %s: %s", self.url, msg[1:] if len(msg) > 1 else "")

    def _call(self, handler: MessageHandler, msg: List[Any]) -> None:
        # The reader is shared by every subscription on this socket.
        try:
            handler(msg)
        except Exception:
            logger.exception("handler for %s on %s failed; message dropped", msg[1], self.url)

    def _on_closed(self) -> None:
        self._ws = None
        for sub_id, handler in list(self._handlers.items()):
            self._call(handler, ["CLOSED", sub_id, "connection closed"])
        self._handlers.clear()
        for fut in self._ok_waiters.values():
            if not fut.done():
                fut.set_exception(NetworkError(f"Relay {self.url} closed before OK"))
        self._ok_waiters.clear()

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        self._ws = None


def _parse_event(raw: Any, url: str) -> Optional[Event]:
    try:
        return Event.model_validate(raw)
    except PydanticValidationError as e:
        logger.debug("malformed event from %s dropped: %s", url, e.error_count())
        return None


class RelayPool:
    """Publish/query/subscribe across a set of relays."""

    def __init__(
        self,
        relays: Optional[Sequence[str]] = None,
        request_timeout: float = 10.0,
        open_timeout: float = 5.0,
    ):
        self.relays = list(relays or DEFAULT_RELAYS)
        self.request_timeout = request_timeout
        self.open_timeout = open_timeout
        self._connections: Dict[str, _RelayConnection] = {}

    def _conn(self, url: str) -> _RelayConnection:
        conn = self._connections.get(url)
        if conn is None:
            conn = _RelayConnection(url, open_timeout=self.open_timeout)
            self._connections[url] = conn
        return conn

    def _targets(self, relays: Optional[Sequence[str]]) -> List[str]:
        return list(dict.fromkeys(relays or self.relays))

    async def publish(self, event: Event, relays: Optional[Sequence[str]] = None) -> None:
        """
        Send to every relay; succeeds if at least one relay accepts.
        Raises NetworkError when none does.
        """
        targets = self._targets(relays)
        outcomes = await asyncio.gather(*(self._publish_one(url, event) for url in targets))
        if any(ok for ok, _ in outcomes):
            return
        reasons = "; ".join(f"{url}: {reason}" for url, (_, reason) in zip(targets, outcomes))
        raise NetworkError(f"Publish of {event.id[:12]} rejected by all relays ({reasons})", context={"event_id": event.id})

    async def _publish_one(self, url: str, event: Event) -> Tuple[bool, str]:
        conn = self._conn(url)
        try:
            await conn.ensure_open()
            waiter = conn.expect_ok(event.id)
            await conn.send(["EVENT", event.to_wire()])
            accepted, message = await asyncio.wait_for(waiter, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            conn.drop_ok(event.id)
            return False, "no OK before timeout"
        except NetworkError as e:
            conn.drop_ok(event.id)
            return False, str(e)
        if not accepted and message.startswith("duplicate:"):
            return True, message
        return accepted, message

    async def query(self, filters: Sequence[Filter], relays: Optional[Sequence[str]] = None) -> List[Event]:
        """
        Collect stored events until every relay sends EOSE (or the request
        timeout passes). Deduped by id, newest first.
        """
        targets = self._targets(relays)
        sub_id = "q" + uuid.uuid4().hex[:16]
        collected: List[Event] = []
        done: Dict[str, asyncio.Future] = {}
        loop = asyncio.get_running_loop()
        wire_filters = [f.to_wire() for f in filters]

        def make_handler(url: str) -> MessageHandler:
            def handle(msg: List[Any]) -> None:
                if msg[0] == "EVENT" and len(msg) >= 3:
                    ev = _parse_event(msg[2], url)
                    if ev is not None:
                        collected.append(ev)
                elif not done[url].done():
                    done[url].set_result(msg[0])
            return handle

        failures = []
        for url in targets:
            conn = self._conn(url)
            done[url] = loop.create_future()
            conn.add_handler(sub_id, make_handler(url))
            try:
                await conn.send(["REQ", sub_id, *wire_filters])
            except NetworkError as e:
                conn.remove_handler(sub_id)
                done[url].set_result("failed")
                failures.append(e)
        if len(failures) == len(targets):
            raise NetworkError(f"Query failed on all relays: {failures[-1]}", cause=failures[-1])

        pending = [f for f in done.values() if not f.done()]
        if pending:
            await asyncio.wait(pending, timeout=self.request_timeout)
        for url in targets:
            await self._close_sub(url, sub_id)
        return dedupe_newest_first(collected)

    async def subscribe(
        self,
        filters: Sequence[Filter],
        on_event: OnEvent,
        relays: Optional[Sequence[str]] = None,
        on_closed: Optional[OnClosed] = None,
    ) -> Cancel:
        """
        Open a live REQ on every relay. Returns a synchronous cancel that is
        safe to call any number of times, including after the socket closed.
        Subscriptions are not re-sent after a reconnect: once every relay has
        closed this one, on_closed(reason) is called.
        """
        targets = self._targets(relays)
        sub_id = "s" + uuid.uuid4().hex[:16]
        wire_filters = [f.to_wire() for f in filters]
        opened: List[str] = []
        dropped: Set[str] = set()
        closed = False
        ready = False
        notified = False

        def maybe_notify(reason: str) -> None:
            nonlocal notified
            if closed or notified or not ready or on_closed is None or not dropped.issuperset(opened):
                return
            notified = True
            on_closed(reason)

        def make_handler(url: str) -> MessageHandler:
            def handle(msg: List[Any]) -> None:
                if closed:
                    return
                if msg[0] == "EVENT" and len(msg) >= 3:
                    ev = _parse_event(msg[2], url)
                    if ev is not None:
                        on_event(ev)
                elif msg[0] == "CLOSED":
                    reason = str(msg[2]) if len(msg) > 2 else "closed"
                    logger.info("relay %s closed subscription %s: %s", url, sub_id, reason)
                    dropped.add(url)
                    maybe_notify(f"{url}: {reason}")
            return handle

        failures = []
        for url in targets:
            conn = self._conn(url)
            conn.add_handler(sub_id, make_handler(url))
            try:
                await conn.send(["REQ", sub_id, *wire_filters])
                opened.append(url)
            except NetworkError as e:
                conn.remove_handler(sub_id)
                failures.append(e)
        if not opened:
            raise NetworkError(f"Subscribe failed on all relays: {failures[-1]}", cause=failures[-1])
        ready = True
        maybe_notify("closed while subscribing")

        def cancel() -> None:
            nonlocal closed
            if closed:
                return
            closed = True
            for url in opened:
                conn = self._conn(url)
                conn.remove_handler(sub_id)
                if conn.is_open:
                    task = asyncio.ensure_future(self._close_sub(url, sub_id))
                    task.add_done_callback(_log_close_failure)

        return cancel

    async def _close_sub(self, url: str, sub_id: str) -> None:
        conn = self._conn(url)
        conn.remove_handler(sub_id)
        if conn.is_open:
            try:
                await conn.send(["CLOSE", sub_id])
            except NetworkError as e:
                logger.debug("CLOSE %s on %s failed: %s", sub_id, url, e)

    async def close(self) -> None:
        await asyncio.gather(*(c.close() for c in self._connections.values()), return_exceptions=True)
        self._connections.clear()


def _log_close_failure(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("subscription close failed: %s", task.exception())
