"""
dispatcher.py — turns a decrypted DM into a command and a reply.

The first whitespace-delimited token is the command (case-insensitive), the
rest are arguments. Three families share a prefix + underscore form:
status_<gid>, cancel_<gid>, dl_<hash>.

Every handler that talks to aria2, the torrent index or the disk catches
the failure and answers with a plain sentence. Nothing propagates.
"""

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from . import crypto
from .aria2 import Aria2Client
from .auth import AuthorizationStore
from .errors import DownloadRPCError, TorrentIndexError
from .gateway import OutboundReply
from .storage import Storage
from .torrents import TorrentIndex, get_imdb_id
from .utils import bytes_to_size, download_progress, format_progress, format_uptime, short

log = logging.getLogger(__name__)

MAGNET_LINK = re.compile(r"magnet:\?xt=urn:btih:[a-zA-Z0-9]+[^\s\"]*")
HTTP_URL = re.compile(r"https?://[\w\-./?#&=:%]+")

MAX_FIND_RESULTS = 3
MAX_LISTED_DOWNLOADS = 5
MAX_LISTED_FILES = 3

HELP_TEXT = (
    "🤖 Katal Bot Commands\n\n"
    "help - show this\n"
    "whoami - your pubkey\n"
    "start - bot info and commands\n"
    "download <url> - start download\n"
    "dl <url> - alias for download\n"
    "downloading - view active downloads\n"
    "find <imdb_url_or_id> - search torrents\n"
    "status_<gid> - check download status\n"
    "cancel_<gid> - cancel download\n"
    "dl_<hash> - quick download by info hash\n"
    "stats - show aria2 global stats\n"
    "clean - delete oldest file\n"
    "autoclean - delete files older than 30 days\n"
    "time - server time\n\n"
    "✅ You are authorized (whitelisted)"
)

ACCESS_REQUIRED = (
    "🔐 Access Required\n\n"
    "This bot requires authorization to prevent abuse.\n"
    "Please send the unlock code to gain access.\n\n"
    "Contact the bot owner for the unlock code."
)

WELCOME = (
    "🔓 Access granted! You are now authorized to use Katal Bot.\n\n"
    'Send "help" to see available commands.'
)

UNKNOWN_COMMAND = 'Unknown command. Send "help" to see available commands.'


class Messenger(Protocol):
    async def send(self, recipient: str, plaintext: str) -> OutboundReply:
        ...


def extract_target(text: str) -> Optional[Tuple[str, str]]:
    """
    Pull a magnet link (preferred) or an http(s) URL out of free text.

    Returns ("magnet", uri), ("url", uri) or None.
    """
    match = MAGNET_LINK.search(text or "")
    if match:
        return "magnet", match.group(0)
    match = HTTP_URL.search(text or "")
    if match:
        return "url", match.group(0)
    return None


def parse_command(text: str) -> Tuple[str, List[str]]:
    """('status_abc', ['x']) from 'STATUS_abc x'. Command lowercased, args untouched."""
    parts = text.split()
    if not parts:
        return "", []
    return parts[0].lower(), parts[1:]


def suffix_id(token: str) -> str:
    """Everything after the first underscore; '' for 'status_'."""
    return token.partition("_")[2]


def user_id_for(sender: str) -> str:
    """Short per-sender id; names the sender's download subdirectory."""
    return sender[:8]


class CommandDispatcher:
    def __init__(
        self,
        auth: AuthorizationStore,
        messenger: Messenger,
        aria2: Aria2Client,
        torrents: TorrentIndex,
        storage: Storage,
        *,
        server_port: int = 6799,
        smb_credentials_file: Optional[Path] = None,
        started_at: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.auth = auth
        self.messenger = messenger
        self.aria2 = aria2
        self.torrents = torrents
        self.storage = storage
        self.server_port = server_port
        self.smb_credentials_file = smb_credentials_file
        self.clock = clock
        self.started_at = clock() if started_at is None else started_at

        self._commands: Dict[str, Callable[[str, List[str]], Awaitable[None]]] = {
            "help": self.cmd_help,
            "whoami": self.cmd_whoami,
            "start": self.cmd_start,
            "download": self.cmd_download,
            "dl": self.cmd_download,
            "downloading": self.cmd_downloading,
            "find": self.cmd_find,
            "stats": self.cmd_stats,
            "clean": self.cmd_clean,
            "autoclean": self.cmd_autoclean,
            "time": self.cmd_time,
        }
        self._prefixed: Dict[str, Callable[[str, str], Awaitable[None]]] = {
            "status_": self.cmd_status,
            "cancel_": self.cmd_cancel,
            "dl_": self.cmd_dl_hash,
        }

    async def reply(self, sender: str, text: str) -> None:
        await self.messenger.send(sender, text)

    # -------------------------
    # Entry points
    # -------------------------

    async def handle_message(self, sender: str, text: str) -> None:
        """Authorization gate, then dispatch."""
        if not self.auth.is_authorized(sender):
            if self.auth.try_unlock(sender, text):
                await self.reply(sender, WELCOME)
            else:
                log.info("User %s not authorized - requesting unlock code", short(sender))
                await self.reply(sender, ACCESS_REQUIRED)
            return
        await self.dispatch(sender, text)

    async def dispatch(self, sender: str, text: str) -> None:
        cmd, args = parse_command(text)
        handler = self._commands.get(cmd)
        if handler is not None:
            log.info("Executing command: %s for %s", cmd, short(sender))
            await handler(sender, args)
            return
        for prefix, prefixed in self._prefixed.items():
            if cmd.startswith(prefix):
                log.info("Executing command: %s for %s", prefix.rstrip("_"), short(sender))
                # ids are case-sensitive, so slice the token as typed
                await prefixed(sender, suffix_id(text.split()[0]))
                return
        log.info("Unrecognized message from %s - sending help pointer", short(sender))
        await self.reply(sender, UNKNOWN_COMMAND)

    # -------------------------
    # Simple commands
    # -------------------------

    async def cmd_help(self, sender: str, args: List[str]) -> None:
        await self.reply(sender, HELP_TEXT)

    async def cmd_whoami(self, sender: str, args: List[str]) -> None:
        try:
            npub = crypto.npub_encode(sender)
        except ValueError:
            npub = "unknown"
        await self.reply(sender, f"Your pubkey: {sender}\nYour npub: {npub}")

    async def cmd_time(self, sender: str, args: List[str]) -> None:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        await self.reply(sender, f"Server time: {now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}")

    def _smb_section(self) -> str:
        if self.smb_credentials_file is None:
            return "\n📁 SMB Access: Not configured\n"
        try:
            user, _, password = self.smb_credentials_file.read_text(encoding="utf-8").strip().partition(":")
        except OSError as exc:
            log.info("Could not read SMB credentials: %s", exc)
            return "\n📁 SMB Access: Not configured\n"
        return (
            "\n📁 SMB/Samba Access:\n"
            "Guest (read-only): //hostname/katal\n"
            "Full access: //hostname/katal-rw\n"
            f"Username: {user}\n"
            f"Password: {password}\n"
        )

    async def cmd_start(self, sender: str, args: List[str]) -> None:
        try:
            used = await self.storage.used_bytes()
        except OSError:
            used = 0
        await self.reply(
            sender,
            "🤖 Katal Bot\n\n"
            f"Your User ID: {user_id_for(sender)}\n"
            f"Used Space: {bytes_to_size(used)}\n"
            f"Server Port: {self.server_port}\n\n"
            "🌐 HTTP Access:\n"
            f"http://hostname:{self.server_port}\n"
            + self._smb_section()
            + "\nSend help for all commands",
        )

    # -------------------------
    # Download manager commands
    # -------------------------

    async def cmd_download(self, sender: str, args: List[str]) -> None:
        if not args:
            await self.reply(sender, "Please provide a URL to download.")
            return
        await self.start_download(sender, " ".join(args))

    async def cmd_dl_hash(self, sender: str, info_hash: str) -> None:
        if not info_hash:
            await self.reply(sender, "Invalid download command. Hash missing.")
            return
        await self.start_download(sender, f"magnet:?xt=urn:btih:{info_hash}")

    async def start_download(self, sender: str, text: str) -> None:
        target = extract_target(text)
        if target is None:
            await self.reply(sender, "No valid magnet link or URL found in your input.")
            return
        kind, uri = target
        directory = str(self.storage.user_dir(user_id_for(sender)))
        try:
            gid = await self.aria2.add_download(directory, uri)
        except DownloadRPCError as exc:
            log.error("Download error: %s", exc)
            label = "magnet" if kind == "magnet" else "URL"
            await self.reply(sender, f"Failed to start {label} download. Check if Aria2 is running.")
            return
        header = "🧲 Magnet download started" if kind == "magnet" else "🔗 URL download started"
        await self.reply(sender, f"{header}\nTrack: status_{gid}\nSee all: downloading")

    async def cmd_status(self, sender: str, gid: str) -> None:
        try:
            status = await self.aria2.status(gid)
        except DownloadRPCError as exc:
            log.error("Status error: %s", exc)
            await self.reply(sender, f"Could not get status for {gid}. Download may not exist.")
            return

        reply = (
            "📊 Download Status\n"
            f"Status: {status.state}\n"
            f"Progress: {format_progress(status.completed_length, status.total_length)}\n"
        )
        if status.state == "active":
            reply += f"Cancel: cancel_{gid}\n"
        names = [Path(p).name for p in status.files[:MAX_LISTED_FILES] if p]
        if names:
            reply += "\nFiles:\n" + "\n".join(f"📁 {n}" for n in names)
            if len(status.files) > MAX_LISTED_FILES:
                reply += f"\n... and {len(status.files) - MAX_LISTED_FILES} more files"
        await self.reply(sender, reply)

    async def cmd_cancel(self, sender: str, gid: str) -> None:
        try:
            cancelled = await self.aria2.cancel(gid)
        except DownloadRPCError as exc:
            log.error("Cancel error: %s", exc)
            cancelled = False
        if cancelled:
            await self.reply(sender, f"❌ Download {gid} canceled.")
        else:
            await self.reply(sender, f"Failed to cancel {gid}. May not exist or already finished.")

    async def cmd_downloading(self, sender: str, args: List[str]) -> None:
        try:
            active = await self.aria2.list_active()
        except DownloadRPCError as exc:
            log.error("Downloads error: %s", exc)
            await self.reply(sender, "Failed to fetch downloads. Try again later.")
            return
        if not active:
            await self.reply(sender, "No ongoing downloads.")
            return
        reply = "📥 Ongoing Downloads\n\n"
        for job in active[:MAX_LISTED_DOWNLOADS]:
            done, total, percent = download_progress(job.completed_length, job.total_length)
            reply += f"🆔 status_{job.gid}\n📊 {job.state} - {percent}%\n💾 {done}/{total} MB\n\n"
        await self.reply(sender, reply)

    async def cmd_stats(self, sender: str, args: List[str]) -> None:
        try:
            stats = await self.aria2.global_stats()
        except DownloadRPCError as exc:
            log.error("Stats error: %s", exc)
            await self.reply(sender, "Could not fetch aria2 stats. Check if aria2 is running.")
            return
        await self.reply(
            sender,
            "📊 Aria2 Global Stats\n\n"
            f"🔽 Download Speed: {bytes_to_size(stats.download_speed)}/s\n"
            f"🔼 Upload Speed: {bytes_to_size(stats.upload_speed)}/s\n"
            f"📦 Active Downloads: {stats.num_active}\n"
            f"⏳ Waiting Downloads: {stats.num_waiting}\n"
            f"🛑 Stopped Downloads: {stats.num_stopped}\n"
            f"📈 Total Downloads: {stats.total}",
        )

    # -------------------------
    # Torrent search
    # -------------------------

    async def cmd_find(self, sender: str, args: List[str]) -> None:
        if not args:
            await self.reply(sender, "Please provide an IMDb URL or IMDb ID.")
            return
        imdb_id = get_imdb_id(" ".join(args))
        if not imdb_id:
            await self.reply(sender, "Please provide a valid IMDb URL or IMDb ID (e.g. tt1234567)")
            return
        try:
            results = await self.torrents.search(imdb_id)
        except TorrentIndexError:
            await self.reply(sender, "Failed to fetch torrents. Try again later.")
            return
        if not results:
            await self.reply(sender, "No torrents found for this IMDb ID.")
            return

        for result in results[:MAX_FIND_RESULTS]:
            message = f"🎬 {result.title}\n\n"
            if result.quick_download:
                message += f"📥 Quick download: {result.quick_download}\n\n"
            message += result.magnet
            await self.reply(sender, message)
        if len(results) > MAX_FIND_RESULTS:
            await self.reply(sender, f"... and {len(results) - MAX_FIND_RESULTS} more results found.")

    # -------------------------
    # Storage commands
    # -------------------------

    async def cmd_clean(self, sender: str, args: List[str]) -> None:
        log.info("User %s requested clean command", short(sender))
        try:
            removed = await self.storage.delete_oldest()
        except OSError as exc:
            log.error("Error deleting files: %s", exc)
            await self.reply(sender, "❌ Failed to delete files.")
            return
        if removed is None:
            await self.reply(sender, "No files to delete.")
        else:
            await self.reply(sender, f"🗑️ Deleted oldest file: {removed.path.name}")

    async def cmd_autoclean(self, sender: str, args: List[str]) -> None:
        log.info("User %s requested autoclean command", short(sender))
        try:
            if not await self.storage.has_files():
                await self.reply(sender, "No files found to auto-clean.")
                return
            found, deleted, freed = await self.storage.purge_old()
        except OSError as exc:
            log.error("Error during auto-clean: %s", exc)
            await self.reply(sender, "❌ Auto-clean failed. Try again later.")
            return
        if not found:
            await self.reply(sender, "No files older than 30 days found.")
            return
        log.info("Auto-clean: Deleted %d files, freed %s", deleted, bytes_to_size(freed))
        await self.reply(
            sender,
            "🧹 Auto-clean completed!\n"
            f"✅ Deleted {deleted} files older than 30 days\n"
            f"💾 Freed up {bytes_to_size(freed)} of space",
        )

    # -------------------------
    # Periodic public status
    # -------------------------

    async def compose_status_snapshot(self) -> Optional[str]:
        """Public status text, or None when aria2 can't be reached."""
        try:
            stats = await self.aria2.global_stats()
        except DownloadRPCError as exc:
            log.warning("Skipping status post: %s", exc)
            return None
        try:
            used = await self.storage.used_bytes()
        except OSError:
            used = 0
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        return (
            "📊 Katal Bot Status\n\n"
            f"Uptime: {format_uptime(self.clock() - self.started_at)}\n"
            f"Authorised Users: {self.auth.count()}\n"
            f"Active: {stats.num_active}\n"
            f"Queued: {stats.num_waiting}\n"
            f"Stopped: {stats.num_stopped}\n"
            f"Download: {round(stats.download_speed / 1024)} KB/s\n"
            f"Upload: {round(stats.upload_speed / 1024)} KB/s\n"
            f"Disk Used: {bytes_to_size(used)}\n"
            f"Time: {now.isoformat(timespec='seconds')}"
        )
