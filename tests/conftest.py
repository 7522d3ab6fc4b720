"""
Shared fakes for the test suite.

Nothing here opens a socket: the relay pool, aria2 and the torrent index are
replaced by in-memory doubles with the same call shapes as the real ones.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from katal import crypto
from katal import messages as m
from katal.aria2 import DownloadStatus, GlobalStats
from katal.auth import AuthorizationStore
from katal.errors import DownloadRPCError, RelayError, TorrentIndexError
from katal.gateway import OutboundReply, PublishOutcome
from katal.storage import Storage

UNLOCK_CODE = "ABC123"


class RecordingMessenger:
    """Stands in for DirectMessenger; remembers every reply."""

    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.broadcasts: List[str] = []

    async def send(self, recipient: str, plaintext: str) -> OutboundReply:
        self.sent.append((recipient, plaintext))
        return OutboundReply(recipient, plaintext, PublishOutcome({"wss://fake": True}))

    async def broadcast(self, text: str) -> PublishOutcome:
        self.broadcasts.append(text)
        return PublishOutcome({"wss://fake": True})

    def texts(self) -> List[str]:
        return [text for _, text in self.sent]


class FakeAria2:
    def __init__(self) -> None:
        self.fail = False
        self.closed = False
        self.added: List[tuple] = []
        self.cancelled: List[str] = []
        self.statuses: Dict[str, DownloadStatus] = {}
        self.active: List[DownloadStatus] = []
        self.stats = GlobalStats(
            download_speed=2048,
            upload_speed=1024,
            num_active=1,
            num_waiting=2,
            num_stopped=3,
            raw={"downloadSpeed": "2048", "uploadSpeed": "1024", "numActive": "1", "numWaiting": "2", "numStopped": "3"},
        )

    def _check(self) -> None:
        if self.fail:
            raise DownloadRPCError("aria2 unreachable: connection refused")

    async def add_download(self, directory: str, uri: str) -> str:
        self._check()
        self.added.append((directory, uri))
        return "2089b05ecca3d829"

    async def status(self, gid: str) -> DownloadStatus:
        self._check()
        if gid not in self.statuses:
            raise DownloadRPCError("aria2 error: GID not found")
        return self.statuses[gid]

    async def list_active(self) -> List[DownloadStatus]:
        self._check()
        return list(self.active)

    async def cancel(self, gid: str) -> bool:
        self._check()
        self.cancelled.append(gid)
        return gid in self.statuses

    async def global_stats(self) -> GlobalStats:
        self._check()
        return self.stats

    async def close(self) -> None:
        self.closed = True


class FakeTorrentIndex:
    def __init__(self) -> None:
        self.results: List[Any] = []
        self.fail = False
        self.queries: List[str] = []
        self.closed = False

    async def search(self, imdb_id: str):
        self.queries.append(imdb_id)
        if self.fail:
            raise TorrentIndexError("index unreachable")
        return list(self.results)

    async def close(self) -> None:
        self.closed = True


class FakeSubscription:
    def __init__(self, flt, on_event, on_eose, on_close) -> None:
        self.filter = flt
        self.on_event = on_event
        self.on_eose = on_eose
        self.on_close = on_close
        self.relays = {"wss://fake"}
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakePool:
    """
    Relay pool double. `verdicts[url]` picks what a publish to that relay does:
    True (accepted, the default), "reject", or "hang" (until `release` is set).
    """

    def __init__(self, urls: List[str]) -> None:
        self.urls = list(urls)
        self.opened = False
        self.closed = False
        self.subscriptions: List[FakeSubscription] = []
        self.published: List[Dict[str, Any]] = []
        self.verdicts: Dict[str, Any] = {}
        self.release = asyncio.Event()

    async def open(self) -> None:
        self.opened = True

    def connected_count(self) -> int:
        return 0 if self.closed else len(self.urls)

    async def subscribe(self, flt, on_event, on_eose=None, on_close=None) -> FakeSubscription:
        sub = FakeSubscription(flt, on_event, on_eose, on_close)
        self.subscriptions.append(sub)
        return sub

    def publish(self, event):
        self.published.append(event)
        return [(url, self._verdict(url)) for url in self.urls]

    async def _verdict(self, url: str) -> str:
        verdict = self.verdicts.get(url, True)
        if verdict == "hang":
            await self.release.wait()
            return ""
        if verdict is True:
            return ""
        raise RelayError(f"{url} rejected event")

    async def close(self) -> None:
        self.closed = True


class FakePoolFactory:
    """Callable the supervisor uses in place of RelayPool; keeps every pool it made."""

    def __init__(self) -> None:
        self.pools: List[FakePool] = []

    def __call__(self, urls: List[str]) -> FakePool:
        pool = FakePool(urls)
        self.pools.append(pool)
        return pool


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def build_dm(sender: crypto.Identity, recipient_pubkey: str, text: str, created_at: Optional[int] = None):
    content = crypto.nip04_encrypt(sender.secret, recipient_pubkey, text)
    event = m.new_event(m.DIRECT_MSG, sender.pubkey, content, [["p", recipient_pubkey]], created_at)
    return m.sign_event(event, sender)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# -------------------------
# Fixtures
# -------------------------


@pytest.fixture
def bot_identity() -> crypto.Identity:
    return crypto.Identity.generate()


@pytest.fixture
def user_identity() -> crypto.Identity:
    return crypto.Identity.generate()


@pytest.fixture
def make_dm():
    return build_dm


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def auth() -> AuthorizationStore:
    return AuthorizationStore(UNLOCK_CODE)


@pytest.fixture
def messenger() -> RecordingMessenger:
    return RecordingMessenger()


@pytest.fixture
def aria2() -> FakeAria2:
    return FakeAria2()


@pytest.fixture
def torrents() -> FakeTorrentIndex:
    return FakeTorrentIndex()


@pytest.fixture
def storage(tmp_path) -> Storage:
    s = Storage(tmp_path / "katal")
    s.ensure()
    return s


@pytest.fixture
def pool_factory() -> FakePoolFactory:
    return FakePoolFactory()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()
