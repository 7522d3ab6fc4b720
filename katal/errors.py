"""
errors.py — one small exception tree for the whole bot.

Everything the bot raises on purpose derives from KatalError so call sites
can catch "our" failures without swallowing programming errors.
"""


class KatalError(Exception):
    """Base class for every error the bot raises deliberately."""


class ConfigError(KatalError):
    """Bad startup configuration (e.g. an unparseable identity secret)."""


class DecryptError(KatalError):
    """Ciphertext is malformed or was not encrypted to this identity."""


class RelayError(KatalError):
    """Transport-level failure talking to a relay endpoint."""


class PublishRejected(RelayError):
    """A relay answered OK=false for an event we published."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url} rejected event: {reason}")
        self.url = url
        self.reason = reason


class DownloadRPCError(KatalError):
    """The download manager was unreachable or answered with garbage."""


class TorrentIndexError(KatalError):
    """The torrent index was unreachable or answered with garbage."""
