"""
supervisor.py — owns the relay subscription and keeps it alive.

State machine:

    DISCONNECTED -> CONNECTING -> SUBSCRIBED -> CLOSED -> CONNECTING ...
    any state -> DISCONNECTED (shutdown)

- Every `reconnect_interval` the pool and subscription are torn down and
  rebuilt, healthy or not: relay sockets can go silently stuck.
- When the relays drop the subscription unexpectedly we wait
  `close_retry_delay` and reconnect once; no tight retry loop.
- A liveness line is logged every `health_interval`. Observational only.

Inbound path per event:
    recipient check -> age check -> replay check -> replay record -> decrypt -> handler
"""

import asyncio
import enum
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .auth import AuthorizationStore
from .channel import SecureChannel, clean_plaintext
from . import messages as m
from .errors import DecryptError
from .relay import Closable, RelayPool, Subscription
from .replay import ReplayCache
from .tasks import BackgroundTasks
from .utils import short

log = logging.getLogger(__name__)

EVENT_WINDOW = 120.0
RECONNECT_INTERVAL = 100.0
HEALTH_INTERVAL = 60.0
SETTLE_DELAY = 0.1
CLOSE_RETRY_DELAY = 5.0

MessageHandler = Callable[[str, str], Awaitable[None]]
PoolFactory = Callable[[List[str]], RelayPool]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


class ConnectionSupervisor:
    def __init__(
        self,
        relays: List[str],
        channel: SecureChannel,
        replay: ReplayCache,
        handler: MessageHandler,
        tasks: BackgroundTasks,
        *,
        auth: Optional[AuthorizationStore] = None,
        pool_factory: PoolFactory = RelayPool,
        event_window: float = EVENT_WINDOW,
        reconnect_interval: float = RECONNECT_INTERVAL,
        health_interval: float = HEALTH_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
        close_retry_delay: float = CLOSE_RETRY_DELAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.relays = list(relays)
        self.channel = channel
        self.replay = replay
        self.handler = handler
        self.tasks = tasks
        self.auth = auth
        self.pool_factory = pool_factory
        self.event_window = event_window
        self.reconnect_interval = reconnect_interval
        self.health_interval = health_interval
        self.settle_delay = settle_delay
        self.close_retry_delay = close_retry_delay
        self.clock = clock

        self.state = ConnectionState.DISCONNECTED
        self._pool: Optional[RelayPool] = None
        self._subscription: Optional[Subscription] = None
        self._connect_lock = asyncio.Lock()
        self._reconnect_soon = asyncio.Event()
        self._closing = False

    # -------------------------
    # Accessors
    # -------------------------

    @property
    def pool(self) -> Optional[RelayPool]:
        """The live pool, or None while (re)connecting or after shutdown."""
        return self._pool

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    def subscription_filter(self) -> Dict[str, Any]:
        return {
            "kinds": [m.DIRECT_MSG],
            "#p": [self.channel.pubkey],
            "since": int(self.clock() - self.event_window),
        }

    def health_report(self) -> Dict[str, Any]:
        pool = self._pool
        return {
            "state": self.state.value,
            "cached_events": len(self.replay),
            "authorized": self.auth.count() if self.auth else 0,
            "connected_relays": pool.connected_count() if pool is not None else 0,
            "total_relays": len(self.relays),
        }

    # -------------------------
    # Connection lifecycle
    # -------------------------

    async def close_subscription(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await sub.close()
            log.info("Closed subscription")

    async def close_pool(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            log.info("Closed relay connections")

    async def _teardown(self) -> None:
        """Drop the old subscription and pool. Best-effort; errors are logged."""
        try:
            await self.close_subscription()
        except Exception as exc:
            log.warning("Error closing subscription: %s", exc)
        try:
            await self.close_pool()
        except Exception as exc:
            log.warning("Error destroying pool: %s", exc)

    async def connect(self) -> None:
        """Replace pool + subscription with fresh ones."""
        async with self._connect_lock:
            if self._closing:
                return
            started = time.monotonic()
            log.info("Creating new relay connection...")
            self.state = ConnectionState.CONNECTING
            await self._teardown()
            await asyncio.sleep(self.settle_delay)

            pool = self.pool_factory(self.relays)
            if not isinstance(pool, Closable):
                raise TypeError(f"{type(pool).__name__} has no close(); cannot supervise it")
            try:
                await pool.open()
                if self._closing:
                    # Shutdown started while we were connecting.
                    await pool.close()
                    return

                sub = await pool.subscribe(
                    self.subscription_filter(),
                    on_event=self._on_event,
                    on_eose=self._on_eose,
                    on_close=self._on_close,
                )
            except BaseException:
                # Failed or cancelled half way: the pool never becomes ours.
                self.state = ConnectionState.DISCONNECTED
                try:
                    await asyncio.shield(pool.close())
                except Exception as exc:
                    log.warning("Error closing abandoned pool: %s", exc)
                raise
            self._pool = pool
            self._subscription = sub
            self.state = ConnectionState.SUBSCRIBED
            log.info("Relay connection created in %.0fms", (time.monotonic() - started) * 1000)

    async def run(self) -> None:
        """Connect, then reconnect forever on the fixed schedule (or after a drop)."""
        while not self._closing:
            try:
                await self.connect()
            except Exception as exc:
                log.error("Relay connection failed: %s", exc)
                self.state = ConnectionState.DISCONNECTED
            try:
                await asyncio.wait_for(self._reconnect_soon.wait(), timeout=self.reconnect_interval)
            except asyncio.TimeoutError:
                log.info("Scheduled relay restart (every %.0f seconds)", self.reconnect_interval)
                continue
            self._reconnect_soon.clear()
            if self._closing:
                break
            log.info("Reconnecting to relays in %.0fs...", self.close_retry_delay)
            await asyncio.sleep(self.close_retry_delay)

    async def health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            report = self.health_report()
            log.info(
                "Health check - Cache: %d events, Whitelist: %d users, Connected relays: %d/%d",
                report["cached_events"],
                report["authorized"],
                report["connected_relays"],
                report["total_relays"],
            )

    def stop(self) -> None:
        """No more reconnects; subscription drops are no longer reported."""
        self._closing = True
        self.state = ConnectionState.DISCONNECTED
        self._reconnect_soon.set()

    async def close(self) -> None:
        """Stop reconnecting and tear everything down."""
        self.stop()
        await self._teardown()

    # -------------------------
    # Subscription callbacks
    # -------------------------

    def _on_eose(self) -> None:
        log.info("Subscription established to %d relays", len(self._subscription.relays) if self._subscription else 0)

    def _on_close(self, reason: str) -> None:
        if self._closing:
            return
        log.warning("Subscription closed: %s", reason)
        self.state = ConnectionState.CLOSED
        self._reconnect_soon.set()

    def _on_event(self, event: Dict[str, Any]) -> None:
        self.tasks.spawn(self.process_event(event), name=f"event:{str(event.get('id', ''))[:8]}")

    # -------------------------
    # Inbound pipeline
    # -------------------------

    async def process_event(self, event: Dict[str, Any]) -> bool:
        """
        Run one inbound event through the intake pipeline.

        Returns True if it reached the handler. Never raises: one bad event
        must not take the subscription down.
        """
        event_id = event.get("id")
        sender = event.get("pubkey")
        if not event_id or not sender:
            return False
        if self.channel.pubkey not in m.tag_values(event, "p"):
            # Relays don't always honour the #p filter.
            log.debug("Skipping event %s not addressed to us", str(event_id)[:8])
            return False

        try:
            age = self.clock() - float(event.get("created_at", 0))
        except (TypeError, ValueError):
            return False
        if age > self.event_window:
            log.info("Skipping old event %s (%ds old)", event_id[:8], round(age))
            return False

        # has() and record() with no await in between: a copy of this event
        # arriving from another relay can't slip through.
        if self.replay.has(event_id):
            log.debug("Skipping duplicate event %s", event_id[:8])
            return False
        self.replay.record(event_id, self.clock())

        log.info("Received event %s from %s", event_id[:8], short(sender))
        try:
            plaintext = await self.channel.decrypt(sender, event.get("content", ""))
        except DecryptError as exc:
            log.warning("Failed to decrypt message from %s: %s", short(sender), exc)
            return False

        try:
            await self.handler(sender, clean_plaintext(plaintext))
        except Exception:
            log.exception("Error handling event %s", event_id[:8])
        return True
