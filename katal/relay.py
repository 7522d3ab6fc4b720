"""
relay.py — multi-endpoint publish/subscribe transport over relay websockets.

Pieces:
- RelayConnection: one websocket to one relay; owns its reader task and the
  futures waiting for OK acknowledgements of events we published.
- RelayPool: the set of connections the bot talks through. Subscriptions fan
  out to every connected relay; publishes return one awaitable per relay so
  the caller can account outcomes independently.
- Subscription: the live REQ on every relay, with callbacks for events,
  end-of-stored-events, and closure by the relays.

The pool checks event ids and signatures before handing events upward. It
does NOT dedupe across relays; that is the replay cache's job.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable

import aiohttp

from . import framing
from . import messages as m
from .errors import PublishRejected, RelayError

log = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], None]
NoticeCallback = Callable[[str], None]


@runtime_checkable
class Closable(Protocol):
    """Anything the supervisor tears down on reconnect or shutdown."""

    async def close(self) -> None:
        ...


class Subscription:
    """
    A REQ that lives on every relay it was sent to.

    on_close fires once, when the last relay holding the subscription drops it
    (CLOSED frame or lost connection). It never fires for our own close().
    """

    def __init__(
        self,
        pool: "RelayPool",
        sub_id: str,
        flt: Dict[str, Any],
        on_event: EventCallback,
        on_eose: Optional[Callable[[], None]] = None,
        on_close: Optional[NoticeCallback] = None,
    ) -> None:
        self.pool = pool
        self.sub_id = sub_id
        self.filter = flt
        self.on_event = on_event
        self.on_eose = on_eose
        self.on_close = on_close
        self.relays: Set[str] = set()
        self._eose_from: Set[str] = set()
        self._eose_fired = False
        self.closed = False

    def _deliver(self, event: Dict[str, Any]) -> None:
        if not self.closed:
            self.on_event(event)

    def _eose(self, url: str) -> None:
        self._eose_from.add(url)
        if not self._eose_fired and self.relays and self.relays <= self._eose_from:
            self._eose_fired = True
            if self.on_eose:
                self.on_eose()

    def _dropped_by(self, url: str, reason: str) -> None:
        if self.closed or url not in self.relays:
            return
        self.relays.discard(url)
        log.debug("Subscription %s dropped by %s: %s", self.sub_id, url, reason)
        if not self.relays:
            self.closed = True
            self.pool._forget(self.sub_id)
            if self.on_close:
                self.on_close(reason)

    async def close(self) -> None:
        """Send CLOSE everywhere it's still open. Best-effort; errors are logged."""
        if self.closed:
            return
        self.closed = True
        self.pool._forget(self.sub_id)
        for url in list(self.relays):
            conn = self.pool.connections.get(url)
            if conn is None or not conn.connected:
                continue
            try:
                await conn.send([framing.CLOSE, self.sub_id])
            except Exception as exc:
                log.warning("Error closing subscription on %s: %s", url, exc)
        self.relays.clear()


class RelayConnection:
    """Tiny wrapper around one relay websocket plus its pending OK futures."""

    def __init__(self, url: str, pool: "RelayPool") -> None:
        self.url = url
        self.pool = pool
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending_ok: Dict[str, asyncio.Future] = {}

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self.ws.closed

    async def connect(self, session: aiohttp.ClientSession, timeout: float) -> None:
        self.ws = await asyncio.wait_for(session.ws_connect(self.url, heartbeat=30), timeout)
        self._reader_task = asyncio.create_task(self._reader_loop(), name=f"relay-reader:{self.url}")

    async def send(self, frame: List[Any]) -> None:
        if not self.connected:
            raise RelayError(f"{self.url} is not connected")
        try:
            await framing.write_frame(self.ws, frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise RelayError(f"{self.url}: {exc}") from exc

    async def publish(self, event: m.SignedMessage) -> str:
        """
        Send an event and wait for the relay's verdict.

        Returns the relay's OK message on acceptance.

        Raises:
            PublishRejected: relay answered OK=false.
            RelayError: not connected, or the socket went away before OK.
        """
        loop = asyncio.get_running_loop()
        fut = self._pending_ok.get(event["id"])
        if fut is None or fut.done():
            fut = loop.create_future()
            # Retrieve late verdicts nobody waits for any more.
            fut.add_done_callback(lambda f: f.cancelled() or f.exception())
            self._pending_ok[event["id"]] = fut
        try:
            await self.send([framing.EVENT, event])
            return await asyncio.shield(fut)
        finally:
            if fut.done():
                self._pending_ok.pop(event["id"], None)

    def _resolve_ok(self, event_id: str, accepted: bool, message: str) -> None:
        fut = self._pending_ok.pop(event_id, None)
        if fut is None or fut.done():
            return
        if accepted:
            fut.set_result(message)
        else:
            fut.set_exception(PublishRejected(self.url, message))

    async def _reader_loop(self) -> None:
        """Background task: read frames until the socket closes."""
        try:
            while True:
                try:
                    frame = await framing.read_frame(self.ws)
                except ValueError as exc:
                    log.debug("Ignoring bad frame from %s: %s", self.url, exc)
                    continue
                if frame is None:
                    break
                self.pool._handle_frame(self, frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("Relay %s reader stopped: %s", self.url, exc)
        finally:
            self._fail_pending("connection closed")
            self.pool._connection_lost(self)

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending_ok.values():
            if not fut.done():
                fut.set_exception(RelayError(f"{self.url}: {reason}"))
        self._pending_ok.clear()

    async def close(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self.ws is not None and not self.ws.closed:
            await self.ws.close()
        self._fail_pending("pool closed")


class RelayPool:
    """
    Connections to a fixed list of relays.

    open() connects concurrently and tolerates individual failures; a pool
    with zero live connections is still a valid (if useless) pool and the
    supervisor's next reconnect will try again.
    """

    def __init__(
        self,
        urls: List[str],
        *,
        session: Optional[aiohttp.ClientSession] = None,
        connect_timeout: float = 10.0,
        verify_events: bool = True,
    ) -> None:
        self.urls = list(urls)
        self.connect_timeout = connect_timeout
        self.verify_events = verify_events
        self.connections: Dict[str, RelayConnection] = {}
        self._session = session
        self._owns_session = session is None
        self._subs: Dict[str, Subscription] = {}
        self.closed = False

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        async def _connect(url: str) -> None:
            conn = RelayConnection(url, self)
            try:
                await conn.connect(self._session, self.connect_timeout)
            except Exception as exc:
                log.warning("Could not connect to %s: %s", url, exc)
                return
            self.connections[url] = conn

        await asyncio.gather(*(_connect(u) for u in self.urls))
        log.info("Connected to %d/%d relays", self.connected_count(), len(self.urls))

    def connected_count(self) -> int:
        return sum(1 for c in self.connections.values() if c.connected)

    async def subscribe(
        self,
        flt: Dict[str, Any],
        on_event: EventCallback,
        on_eose: Optional[Callable[[], None]] = None,
        on_close: Optional[NoticeCallback] = None,
    ) -> Subscription:
        """Send one REQ to every connected relay and return the handle."""
        sub = Subscription(self, uuid.uuid4().hex[:16], flt, on_event, on_eose, on_close)
        self._subs[sub.sub_id] = sub
        for url, conn in self.connections.items():
            if not conn.connected:
                continue
            try:
                await conn.send([framing.REQ, sub.sub_id, flt])
                sub.relays.add(url)
            except RelayError as exc:
                log.warning("Subscribe failed on %s: %s", url, exc)
        return sub

    def publish(self, event: m.SignedMessage) -> List[Tuple[str, Awaitable[str]]]:
        """
        One awaitable per configured relay. Relays we aren't connected to get
        an awaitable that fails immediately, so every endpoint is accounted.
        """
        results: List[Tuple[str, Awaitable[str]]] = []
        for url in self.urls:
            conn = self.connections.get(url)
            if conn is None or not conn.connected:
                results.append((url, _not_connected(url)))
            else:
                results.append((url, conn.publish(event)))
        return results

    async def close(self) -> None:
        """Close every subscription and connection. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        for sub in list(self._subs.values()):
            await sub.close()
        for conn in list(self.connections.values()):
            try:
                await conn.close()
            except Exception as exc:
                log.warning("Error closing %s: %s", conn.url, exc)
        if self._owns_session and self._session is not None:
            await self._session.close()

    # -------------------------
    # Callbacks from connections
    # -------------------------

    def _forget(self, sub_id: str) -> None:
        self._subs.pop(sub_id, None)

    def _handle_frame(self, conn: RelayConnection, frame: List[Any]) -> None:
        verb = frame[0]
        if verb == framing.EVENT and len(frame) >= 3:
            sub = self._subs.get(frame[1])
            event = frame[2]
            if sub is None or not isinstance(event, dict):
                return
            if self.verify_events and not m.verify_event(event):
                log.debug("Dropping event with bad id/signature from %s", conn.url)
                return
            sub._deliver(event)
        elif verb == framing.OK and len(frame) >= 3:
            message = frame[3] if len(frame) > 3 else ""
            conn._resolve_ok(str(frame[1]), bool(frame[2]), str(message))
        elif verb == framing.EOSE and len(frame) >= 2:
            sub = self._subs.get(frame[1])
            if sub is not None:
                sub._eose(conn.url)
        elif verb == framing.CLOSED and len(frame) >= 2:
            sub = self._subs.get(frame[1])
            if sub is not None:
                sub._dropped_by(conn.url, str(frame[2]) if len(frame) > 2 else "closed by relay")
        elif verb == framing.NOTICE:
            log.info("Notice from %s: %s", conn.url, frame[1] if len(frame) > 1 else "")

    def _connection_lost(self, conn: RelayConnection) -> None:
        if self.closed:
            return
        log.warning("Lost connection to %s", conn.url)
        for sub in list(self._subs.values()):
            sub._dropped_by(conn.url, f"connection to {conn.url} lost")


async def _not_connected(url: str) -> str:
    raise RelayError(f"{url} is not connected")
