import hashlib
import json
import time
from typing import Any, Dict, List, Optional

from . import crypto

"""
messages.py — signed event envelopes, canonicalization, and signatures.

What this module does:
- Builds the event "envelope" relays store and forward (kind, tags, content...).
- Creates deterministic bytes for hashing so every relay and client derives
  the same event id.
- Signs the id with the bot identity and verifies signatures on inbound events.

Why hash-then-sign?
- The id doubles as the dedupe key everywhere (relays, our replay cache), so it
  must be stable; the signature then only has to cover 32 bytes.
"""

# -----------------------
# Event kinds we care about
# -----------------------
PUBLIC_NOTE = 1
DIRECT_MSG = 4

SignedMessage = Dict[str, Any]


def now_s() -> int:
    """Current Unix time in whole seconds (used for created_at)."""
    return int(time.time())


def new_event(
    kind: int,
    pubkey: str,
    content: str,
    tags: Optional[List[List[str]]] = None,
    created_at: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Create an unsigned event. 'id' and 'sig' stay None until sign_event().
    """
    return {
        "id": None,
        "pubkey": pubkey,
        "created_at": now_s() if created_at is None else int(created_at),
        "kind": kind,
        "tags": [list(t) for t in (tags or [])],
        "content": content,
        "sig": None,
    }


def canonical_bytes(event: Dict[str, Any]) -> bytes:
    """
    Deterministic serialization used for the event id.

    Fixed field order, compact separators, and raw UTF-8 (no \\u escapes) so
    the same event always yields the exact same bytes on every platform.
    """
    data = [
        0,
        event["pubkey"],
        event["created_at"],
        event["kind"],
        event["tags"],
        event["content"],
    ]
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(event: Dict[str, Any]) -> str:
    """SHA-256 over canonical bytes, hex encoded."""
    return hashlib.sha256(canonical_bytes(event)).hexdigest()


def sign_event(event: Dict[str, Any], identity: crypto.Identity) -> SignedMessage:
    """
    Fill in 'pubkey', 'id' and 'sig'. Call this *after* content and tags are final.
    """
    event["pubkey"] = identity.pubkey
    event["id"] = compute_event_id(event)
    event["sig"] = crypto.sign(identity.secret, bytes.fromhex(event["id"]))
    return event


def verify_event(event: Dict[str, Any]) -> bool:
    """
    Check that 'id' matches the content and 'sig' is valid for 'pubkey'.
    Returns False on anything missing or malformed instead of raising.
    """
    try:
        event_id = event["id"]
        sig = event["sig"]
        pubkey = event["pubkey"]
        if not event_id or not sig or not pubkey:
            return False
        if compute_event_id(event) != event_id:
            return False
    except (KeyError, TypeError, ValueError):
        return False
    return crypto.verify(pubkey, bytes.fromhex(event_id), sig)


def tag_values(event: Dict[str, Any], name: str) -> List[str]:
    """All first values of tags called `name` (e.g. every 'p' recipient)."""
    tags = event.get("tags")
    if not isinstance(tags, list):
        return []
    return [t[1] for t in tags if isinstance(t, list) and len(t) > 1 and t[0] == name]


def build_signed_message(
    identity: crypto.Identity,
    kind: int,
    tags: Optional[List[List[str]]],
    content: str,
) -> SignedMessage:
    """
    Convenience helper: new envelope + signature in one go.

    Typical usage:
        ev = build_signed_message(identity, DIRECT_MSG, [["p", peer]], ciphertext)
    """
    return sign_event(new_event(kind, identity.pubkey, content, tags), identity)
