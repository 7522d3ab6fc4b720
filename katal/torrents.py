"""
torrents.py — IMDb id extraction and the torrent-index lookup behind `find`.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

import aiohttp

from .errors import TorrentIndexError

log = logging.getLogger(__name__)

TORRENT_INDEX_URL = "https://torrentio.strem.fun/stream/movie/{imdb_id}.json"
INDEX_TIMEOUT = 15.0

IMDB_ID = re.compile(r"(tt\d{7,8})")
INFO_HASH = re.compile(r"btih:([a-zA-Z0-9]+)")


def get_imdb_id(text: str) -> Optional[str]:
    """First `tt` + 7-8 digits in free text or an IMDb URL."""
    match = IMDB_ID.search(text or "")
    return match.group(1) if match else None


def info_hash(magnet: str) -> Optional[str]:
    match = INFO_HASH.search(magnet or "")
    return match.group(1) if match else None


@dataclass
class TorrentResult:
    title: str
    magnet: str

    @property
    def quick_download(self) -> Optional[str]:
        """`dl_<hash>` command the user can send back, if the hash is known."""
        h = info_hash(self.magnet)
        return f"dl_{h}" if h else None


def magnet_for(hash_: str, title: str = "torrent") -> str:
    return f"magnet:?xt=urn:btih:{hash_}&dn={quote(title or 'torrent', safe='')}"


class TorrentIndex:
    def __init__(
        self,
        url_template: str = TORRENT_INDEX_URL,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = INDEX_TIMEOUT,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def search(self, imdb_id: str) -> List[TorrentResult]:
        """
        Streams for a title, streams without an info hash dropped.

        Raises:
            TorrentIndexError: index unreachable or the body isn't the expected JSON.
        """
        session = await self._get_session()
        url = self.url_template.format(imdb_id=imdb_id)
        try:
            async with session.get(url) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.error("Torrent fetch error: %s", exc)
            raise TorrentIndexError(str(exc)) from exc

        if not isinstance(data, dict):
            raise TorrentIndexError("malformed torrent index response")
        results = []
        for stream in data.get("streams") or []:
            if not isinstance(stream, dict) or not stream.get("infoHash"):
                continue
            title = stream.get("title") or "Unknown"
            results.append(TorrentResult(title=title, magnet=magnet_for(stream["infoHash"], stream.get("title") or "torrent")))
        return results

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
