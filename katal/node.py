import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .aria2 import Aria2Client
from .auth import AuthorizationStore
from .channel import SecureChannel
from .config import Settings
from .dispatcher import CommandDispatcher
from .gateway import DirectMessenger, PublishGateway
from .relay import RelayPool
from .replay import ReplayCache
from .storage import Storage
from .supervisor import ConnectionSupervisor, PoolFactory
from .tasks import BackgroundTasks
from .torrents import TorrentIndex
from .web import StatusService, WebServers, create_file_app, create_status_app

"""
node.py — wires the bot together and runs its lifetime.

What lives here:
- BotContext: every long-lived object, built once and passed explicitly
  (no module-level singletons), so tests can build one with fakes.
- KatalBot: startup, the periodic public status post, signal handling, and
  the ordered, fault-tolerant shutdown.

Shutdown order: background tasks (timers, handlers) -> web servers ->
subscription -> relay pool -> replay cache -> HTTP clients. Each step logs
and carries on if it fails; the process still exits 0.
"""

log = logging.getLogger(__name__)


@dataclass
class BotContext:
    settings: Settings
    replay: ReplayCache
    auth: AuthorizationStore
    channel: SecureChannel
    tasks: BackgroundTasks
    gateway: PublishGateway
    messenger: DirectMessenger
    aria2: Aria2Client
    torrents: TorrentIndex
    storage: Storage
    dispatcher: CommandDispatcher
    supervisor: ConnectionSupervisor
    status: StatusService
    started_at: float

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        pool_factory: PoolFactory = RelayPool,
        aria2: Optional[Aria2Client] = None,
        torrents: Optional[TorrentIndex] = None,
        clock: Callable[[], float] = time.time,
    ) -> "BotContext":
        started_at = clock()
        replay = ReplayCache(settings.max_stored_events)
        auth = AuthorizationStore(settings.unlock_code)
        channel = SecureChannel(settings.identity)
        tasks = BackgroundTasks()
        aria2 = aria2 or Aria2Client(settings.aria2_url, secret=settings.aria2_secret)
        torrents = torrents or TorrentIndex()
        storage = Storage(settings.save_dir, settings.autoclean_max_age)

        # The gateway asks the supervisor for the live pool on every attempt;
        # the supervisor doesn't exist yet, so resolve it lazily.
        holder: Dict[str, ConnectionSupervisor] = {}
        gateway = PublishGateway(
            settings.relays,
            lambda: holder["supervisor"].pool if "supervisor" in holder else None,
            timeout=settings.publish_timeout,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
        )
        messenger = DirectMessenger(channel, gateway)
        dispatcher = CommandDispatcher(
            auth,
            messenger,
            aria2,
            torrents,
            storage,
            server_port=settings.server_port,
            smb_credentials_file=settings.smb_credentials_file,
            started_at=started_at,
            clock=clock,
        )
        supervisor = ConnectionSupervisor(
            settings.relays,
            channel,
            replay,
            dispatcher.handle_message,
            tasks,
            auth=auth,
            pool_factory=pool_factory,
            event_window=settings.event_window,
            reconnect_interval=settings.reconnect_interval,
            health_interval=settings.health_interval,
            settle_delay=settings.settle_delay,
            close_retry_delay=settings.close_retry_delay,
            clock=clock,
        )
        holder["supervisor"] = supervisor
        status = StatusService(settings, auth, aria2, storage, started_at=started_at, clock=clock)
        return cls(
            settings=settings,
            replay=replay,
            auth=auth,
            channel=channel,
            tasks=tasks,
            gateway=gateway,
            messenger=messenger,
            aria2=aria2,
            torrents=torrents,
            storage=storage,
            dispatcher=dispatcher,
            supervisor=supervisor,
            status=status,
            started_at=started_at,
        )


class KatalBot:
    def __init__(self, ctx: BotContext, *, serve_http: bool = True) -> None:
        self.ctx = ctx
        self.serve_http = serve_http
        self.web = WebServers()
        self.shutting_down = False
        self._stop = asyncio.Event()
        ctx.tasks.on_critical_failure = self._background_crashed

    # -------------------------
    # Startup
    # -------------------------

    async def start(self) -> None:
        ctx = self.ctx
        ctx.storage.ensure()

        if self.serve_http:
            try:
                await self.web.start(create_status_app(ctx.status, ctx.settings.dashboard_dir), ctx.settings.web_port, "Web dashboard")
                await self.web.start(create_file_app(ctx.storage.root), ctx.settings.server_port, "File server")
            except OSError as exc:
                # The bot is still useful over DMs without the HTTP side.
                log.error("Could not start web servers: %s", exc)

        ctx.tasks.spawn(ctx.supervisor.run(), name="relay-supervisor", critical=True)
        ctx.tasks.spawn(ctx.supervisor.health_loop(), name="health-check", critical=True)
        if ctx.settings.stats_interval > 0:
            ctx.tasks.spawn(self.stats_loop(), name="stats-poster", critical=True)
        log.info("Katal Bot running - send me a DM with commands!")

    async def post_stats_once(self) -> bool:
        text = await self.ctx.dispatcher.compose_status_snapshot()
        if text is None:
            return False
        outcome = await self.ctx.messenger.broadcast(text)
        log.info("Posted periodic stats update (%d relays accepted)", outcome.success_count)
        return outcome.delivered

    async def stats_loop(self) -> None:
        log.info("Starting periodic stats posting (every %.0f minutes)", self.ctx.settings.stats_interval / 60)
        await asyncio.sleep(self.ctx.settings.stats_initial_delay)
        while True:
            try:
                await self.post_stats_once()
            except Exception:
                log.exception("Error posting periodic stats")
            await asyncio.sleep(self.ctx.settings.stats_interval)

    # -------------------------
    # Running / stopping
    # -------------------------

    def request_shutdown(self, reason: str) -> None:
        if self.shutting_down or self._stop.is_set():
            log.info("Already shutting down, please wait...")
            return
        log.info("%s received - starting graceful shutdown...", reason)
        self._stop.set()

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError, AttributeError):
                # Not available on this platform / not the main thread.
                pass
        loop.set_exception_handler(self._on_loop_error)

    def _on_loop_error(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if self.shutting_down:
            log.info("Error during shutdown (ignoring): %s", exc or context.get("message"))
            return
        log.error("Uncaught exception: %s", context.get("message"), exc_info=exc)
        self.request_shutdown("UNCAUGHT_EXCEPTION")

    def _background_crashed(self, name: str, exc: BaseException) -> None:
        # Without the supervisor or its timers the bot is deaf.
        if self.shutting_down:
            return
        log.error("Background task %s died: %s", name, exc)
        self.request_shutdown("UNCAUGHT_EXCEPTION")

    async def run(self) -> None:
        """Start, wait for a signal (or a fatal loop error), shut down."""
        self._install_handlers(asyncio.get_running_loop())
        await self.start()
        await self._stop.wait()
        await self.shutdown()

    async def shutdown(self) -> None:
        self.shutting_down = True
        self._stop.set()
        ctx = self.ctx
        ctx.supervisor.stop()

        steps: List[tuple] = [
            ("Stopped background tasks", ctx.tasks.close),
            ("Web servers closed", self.web.close),
            ("Closed subscription", ctx.supervisor.close_subscription),
            ("Closed relay pool", ctx.supervisor.close_pool),
            ("Cleared event cache", ctx.replay.clear),
            ("Closed download RPC client", ctx.aria2.close),
            ("Closed torrent index client", ctx.torrents.close),
        ]
        for label, step in steps:
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
                log.info("✓ %s", label)
            except Exception as exc:
                log.warning("Shutdown step failed (%s): %s", label, exc)
        log.info("✓ Graceful shutdown complete")
