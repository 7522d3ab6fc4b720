"""
channel.py — the bot's end of an encrypted direct-message conversation.

Wraps the crypto primitives behind the three calls the rest of the bot needs:
decrypt an inbound DM, encrypt an outbound one, and build signed events.
Crypto internals stay in crypto.py; this module only fixes the call contract.
"""

import re
from typing import List, Optional

from . import crypto
from . import messages as m
from .errors import DecryptError

# Some clients prefix DMs with a NIP-18 repost marker; it's never part of a command.
NIP18_MARKER = re.compile(r"^\[//\]: # \(nip18\)\s*", re.IGNORECASE)
PUBLIC_NOTE_FOOTER = "\n\n#bot #katal"


class SecureChannel:
    """Encrypt/decrypt and sign with one identity."""

    def __init__(self, identity: crypto.Identity) -> None:
        self.identity = identity

    @property
    def pubkey(self) -> str:
        return self.identity.pubkey

    async def decrypt(self, sender: str, ciphertext: str) -> str:
        """
        Decrypt a DM from `sender`.

        Raises:
            DecryptError: not encrypted to us, or malformed. Callers drop the
            event; there is no channel to reply on.
        """
        try:
            return crypto.nip04_decrypt(self.identity.secret, sender, ciphertext)
        except DecryptError:
            raise
        except ValueError as exc:
            # e.g. the sender pubkey itself isn't a valid curve point
            raise DecryptError(str(exc)) from exc

    async def encrypt(self, recipient: str, plaintext: str) -> str:
        return crypto.nip04_encrypt(self.identity.secret, recipient, plaintext)

    def build_signed_message(self, kind: int, tags: Optional[List[List[str]]], content: str) -> m.SignedMessage:
        return m.build_signed_message(self.identity, kind, tags, content)

    async def direct_message(self, recipient: str, plaintext: str) -> m.SignedMessage:
        """Encrypt + sign a kind-4 event tagged with the recipient."""
        ciphertext = await self.encrypt(recipient, plaintext)
        return self.build_signed_message(m.DIRECT_MSG, [["p", recipient]], ciphertext)

    def public_note(self, text: str) -> m.SignedMessage:
        """Plaintext, untagged kind-1 broadcast."""
        return self.build_signed_message(m.PUBLIC_NOTE, [], text + PUBLIC_NOTE_FOOTER)


def clean_plaintext(text: str) -> str:
    """Trim whitespace and any leading NIP-18 marker."""
    return NIP18_MARKER.sub("", text.strip()).strip()
