"""
web.py — the two small HTTP faces of the bot.

- Status service: GET /api/status (JSON), the dashboard's index.html at /,
  any other file under the dashboard root, 404 for everything else.
- File server: the storage root as static files with directory listings.

Both are stateless wrappers; all numbers come from the bot's own objects.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from aiohttp import web

from .aria2 import Aria2Client
from .auth import AuthorizationStore
from .config import Settings
from .errors import DownloadRPCError
from .storage import Storage
from .utils import bytes_to_size

log = logging.getLogger(__name__)


class StatusService:
    """Builds the /api/status document."""

    def __init__(
        self,
        settings: Settings,
        auth: AuthorizationStore,
        aria2: Aria2Client,
        storage: Storage,
        started_at: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.auth = auth
        self.aria2 = aria2
        self.storage = storage
        self.clock = clock
        self.started_at = clock() if started_at is None else started_at

    async def snapshot(self) -> Dict[str, Any]:
        try:
            stats = (await self.aria2.global_stats()).raw
        except DownloadRPCError:
            stats = {}
        try:
            used = await self.storage.used_bytes()
        except OSError:
            used = 0
        return {
            "identity": self.settings.identity.pubkey,
            "npub": self.settings.identity.npub,
            "webPort": self.settings.server_port,
            "serverPort": self.settings.server_port,
            "smbPort": self.settings.smb_port,
            "saveDir": str(self.settings.save_dir),
            "usedSpaceBytes": used,
            "usedSpaceFormatted": bytes_to_size(used),
            "uptimeSeconds": round(self.clock() - self.started_at, 3),
            "downloadStats": stats,
            "unlockCode": self.auth.unlock_code,
            "authorizedCount": self.auth.count(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def _safe_path(root: Path, relative: str) -> Optional[Path]:
    """Path under root for a URL tail; None for traversal attempts."""
    root = root.resolve()
    p = (root / relative.lstrip("/")).resolve()
    if p != root and root not in p.parents:
        return None
    return p


def create_status_app(service: StatusService, dashboard_dir: Path) -> web.Application:
    dashboard_dir = Path(dashboard_dir)

    async def api_status(request: web.Request) -> web.Response:
        try:
            return web.json_response(await service.snapshot())
        except Exception as exc:
            log.exception("Status endpoint failed")
            return web.json_response({"error": str(exc)}, status=500)

    async def dashboard(request: web.Request) -> web.StreamResponse:
        tail = request.match_info.get("tail", "") or "index.html"
        path = _safe_path(dashboard_dir, tail)
        if path is None or not path.is_file():
            return web.Response(status=404, text="Not found")
        return web.FileResponse(path)

    app = web.Application()
    app.router.add_get("/api/status", api_status)
    app.router.add_get("/{tail:.*}", dashboard)
    return app


def create_file_app(root: Path) -> web.Application:
    """Static view of the storage root; the root must exist."""
    app = web.Application()
    app.router.add_static("/", Path(root), show_index=True)
    return app


class WebServers:
    """Runs any number of aiohttp apps on their own ports."""

    def __init__(self, host: str = "0.0.0.0") -> None:
        self.host = host
        self._runners: List[web.AppRunner] = []

    async def start(self, app: web.Application, port: int, label: str) -> None:
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.host, port)
        await site.start()
        self._runners.append(runner)
        log.info("%s running on http://localhost:%d", label, port)

    async def close(self) -> None:
        while self._runners:
            runner = self._runners.pop()
            try:
                await runner.cleanup()
            except Exception as exc:
                log.warning("Error stopping web server: %s", exc)
