"""
auth.py — who may talk to the bot.

One shared unlock code per process. A sender who presents it is remembered
until restart; there is no revoke. Nothing is persisted.

Attempts are not rate limited.
"""

import hmac
import logging
from typing import Set

from .utils import short

log = logging.getLogger(__name__)


class AuthorizationStore:
    """In-memory whitelist of sender pubkeys gated by one unlock code."""

    def __init__(self, unlock_code: str) -> None:
        if not unlock_code:
            raise ValueError("unlock code must not be empty")
        self._unlock_code = unlock_code
        self._authorized: Set[str] = set()

    @property
    def unlock_code(self) -> str:
        return self._unlock_code

    def is_authorized(self, sender: str) -> bool:
        return sender in self._authorized

    def try_unlock(self, sender: str, presented_code: str) -> bool:
        """
        Authorize `sender` iff the code matches. Idempotent for senders who
        are already authorized; a wrong code never revokes anything.
        """
        # Constant-time comparison so the code can't be probed byte by byte.
        if hmac.compare_digest(presented_code.encode("utf-8"), self._unlock_code.encode("utf-8")):
            if sender not in self._authorized:
                self._authorized.add(sender)
                log.info("User %s authorized with unlock code", short(sender))
            return True
        return False

    def count(self) -> int:
        return len(self._authorized)
