import json
from typing import Any, List, Optional

import aiohttp

"""
framing.py — tiny JSON-array framing for relay websockets.

Protocol (simple on purpose):
- Each websocket text message is one JSON array whose first element is a verb.
- Client -> relay:  ["EVENT", event], ["REQ", sub_id, filter], ["CLOSE", sub_id]
- Relay -> client:  ["EVENT", sub_id, event], ["OK", event_id, accepted, msg],
                    ["EOSE", sub_id], ["CLOSED", sub_id, msg], ["NOTICE", msg]
- Hard cap on frame size so a buggy relay can't make us parse silly amounts.
"""

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit

EVENT = "EVENT"
REQ = "REQ"
CLOSE = "CLOSE"
OK = "OK"
EOSE = "EOSE"
CLOSED = "CLOSED"
NOTICE = "NOTICE"


def encode_frame(frame: List[Any]) -> str:
    """Compact JSON, keep non-ASCII as UTF-8 (not \\u escapes)."""
    payload = json.dumps(frame, separators=(",", ":"), ensure_ascii=False)
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")
    return payload


def decode_frame(text: str) -> List[Any]:
    """
    Parse one relay frame.

    Raises:
        ValueError: if the frame is too big, not JSON, or not a verb-led array.
    """
    if len(text) > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {len(text)} > {MAX_FRAME_SIZE}")
    try:
        frame = json.loads(text)
    except json.JSONDecodeError as exc:
        # Keep the message short; no payload echo to avoid leaking big data.
        raise ValueError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(frame, list) or not frame or not isinstance(frame[0], str):
        raise ValueError("Frame is not a relay message array")
    return frame


async def read_frame(ws: aiohttp.ClientWebSocketResponse) -> Optional[List[Any]]:
    """
    Read the next relay frame.

    Returns:
        The parsed frame, or None once the socket is closed / errored.

    Raises:
        ValueError: for a text message that isn't a valid frame.
    """
    while True:
        msg = await ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return decode_frame(msg.data)
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                        aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
            return None
        # Binary/ping/pong: relays don't speak those to us; skip.


async def write_frame(ws: aiohttp.ClientWebSocketResponse, frame: List[Any]) -> None:
    """Serialize and send one frame."""
    await ws.send_str(encode_frame(frame))
