"""
aria2.py — client for the download manager's JSON-RPC interface.

Every call either returns a parsed result or raises DownloadRPCError; the
command handlers turn that into a friendly reply. Nothing here retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import DownloadRPCError

log = logging.getLogger(__name__)

ARIA2_RPC_URL = "http://localhost:6398/jsonrpc"
RPC_TIMEOUT = 10.0


def _int(value: Any) -> int:
    # aria2 reports every number as a decimal string.
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class DownloadStatus:
    gid: str
    state: str
    completed_length: int
    total_length: int
    files: List[str] = field(default_factory=list)

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "DownloadStatus":
        if not isinstance(data, dict):
            raise DownloadRPCError("malformed status response")
        files = data.get("files") or []
        if not isinstance(files, list):
            raise DownloadRPCError("malformed file list in status response")
        return cls(
            gid=str(data.get("gid", "")),
            state=str(data.get("status", "unknown")),
            completed_length=_int(data.get("completedLength")),
            total_length=_int(data.get("totalLength")),
            files=[str(f.get("path") or "") for f in files if isinstance(f, dict)],
        )


@dataclass
class GlobalStats:
    download_speed: int
    upload_speed: int
    num_active: int
    num_waiting: int
    num_stopped: int
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.num_active + self.num_waiting + self.num_stopped

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "GlobalStats":
        if not isinstance(data, dict):
            raise DownloadRPCError("malformed stats response")
        return cls(
            download_speed=_int(data.get("downloadSpeed")),
            upload_speed=_int(data.get("uploadSpeed")),
            num_active=_int(data.get("numActive")),
            num_waiting=_int(data.get("numWaiting")),
            num_stopped=_int(data.get("numStopped")),
            raw=dict(data),
        )


class Aria2Client:
    """Thin async JSON-RPC wrapper: addUri, tellStatus, tellActive, remove, getGlobalStat."""

    def __init__(
        self,
        url: str = ARIA2_RPC_URL,
        *,
        secret: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = RPC_TIMEOUT,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._next_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Make one RPC call and return its `result`.

        Raises:
            DownloadRPCError: connection problems, HTTP errors, JSON-RPC error
            objects, or responses without a result.
        """
        params = list(params or [])
        if self.secret:
            params.insert(0, f"token:{self.secret}")
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "method": method, "id": self._next_id, "params": params}

        session = await self._get_session()
        try:
            async with session.post(self.url, json=payload) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.error("Aria2 connection error: %s", exc)
            raise DownloadRPCError(f"aria2 unreachable: {exc}") from exc

        if not isinstance(data, dict):
            raise DownloadRPCError("malformed aria2 response")
        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise DownloadRPCError(f"aria2 error: {message}")
        if "result" not in data:
            raise DownloadRPCError("aria2 response has no result")
        return data["result"]

    async def add_download(self, directory: str, uri: str) -> str:
        """Queue `uri` into `directory`; returns the job id (gid)."""
        gid = await self.call("aria2.addUri", [[uri], {"dir": directory}])
        if not gid:
            raise DownloadRPCError("aria2 returned no gid")
        return str(gid)

    async def status(self, gid: str) -> DownloadStatus:
        return DownloadStatus.from_rpc(await self.call("aria2.tellStatus", [gid]))

    async def list_active(self) -> List[DownloadStatus]:
        result = await self.call("aria2.tellActive")
        if not isinstance(result, list):
            raise DownloadRPCError("malformed tellActive response")
        return [DownloadStatus.from_rpc(item) for item in result]

    async def cancel(self, gid: str) -> bool:
        return bool(await self.call("aria2.remove", [gid]))

    async def global_stats(self) -> GlobalStats:
        return GlobalStats.from_rpc(await self.call("aria2.getGlobalStat"))

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
