"""
Tests for relay framing and the pool's frame routing, using an in-memory
websocket double instead of a network.
"""

import asyncio
import json

import pytest

from katal import crypto, framing
from katal import messages as m
from katal.errors import PublishRejected, RelayError
from katal.relay import Closable, RelayConnection, RelayPool


class FakeWS:
    def __init__(self):
        self.closed = False
        self.sent = []

    async def send_str(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


def _pool(*urls):
    pool = RelayPool(list(urls))
    for url in urls:
        conn = RelayConnection(url, pool)
        conn.ws = FakeWS()
        pool.connections[url] = conn
    return pool


def _signed(text="hi"):
    return m.build_signed_message(crypto.Identity.generate(), m.DIRECT_MSG, [], text)


def test_decode_frame_validation():
    assert framing.decode_frame('["EOSE","sub"]') == ["EOSE", "sub"]
    for bad in ["{}", "[]", "[1,2]", "not json"]:
        with pytest.raises(ValueError):
            framing.decode_frame(bad)
    with pytest.raises(ValueError):
        framing.decode_frame("[" + " " * framing.MAX_FRAME_SIZE + "]")


def test_pool_is_closable():
    assert isinstance(RelayPool(["wss://a"]), Closable)


@pytest.mark.asyncio
async def test_subscribe_sends_req_everywhere():
    pool = _pool("wss://a", "wss://b")
    flt = {"kinds": [4], "#p": ["ab" * 32], "since": 1}

    sub = await pool.subscribe(flt, on_event=lambda e: None)

    assert sub.relays == {"wss://a", "wss://b"}
    for conn in pool.connections.values():
        assert conn.ws.sent == [["REQ", sub.sub_id, flt]]


@pytest.mark.asyncio
async def test_events_are_verified_before_delivery():
    pool = _pool("wss://a")
    got = []
    sub = await pool.subscribe({}, on_event=got.append)
    conn = pool.connections["wss://a"]
    good = _signed()
    forged = dict(_signed(), content="changed")

    pool._handle_frame(conn, ["EVENT", sub.sub_id, good])
    pool._handle_frame(conn, ["EVENT", sub.sub_id, forged])
    pool._handle_frame(conn, ["EVENT", "other-sub", good])

    assert got == [good]


@pytest.mark.asyncio
async def test_eose_fires_once_after_every_relay():
    pool = _pool("wss://a", "wss://b")
    eose = []
    sub = await pool.subscribe({}, on_event=lambda e: None, on_eose=lambda: eose.append(1))

    pool._handle_frame(pool.connections["wss://a"], ["EOSE", sub.sub_id])
    assert eose == []
    pool._handle_frame(pool.connections["wss://b"], ["EOSE", sub.sub_id])
    pool._handle_frame(pool.connections["wss://b"], ["EOSE", sub.sub_id])
    assert eose == [1]


@pytest.mark.asyncio
async def test_on_close_fires_when_last_relay_drops():
    pool = _pool("wss://a", "wss://b")
    reasons = []
    sub = await pool.subscribe({}, on_event=lambda e: None, on_close=reasons.append)

    pool._handle_frame(pool.connections["wss://a"], ["CLOSED", sub.sub_id, "rate-limited"])
    assert reasons == []
    pool._connection_lost(pool.connections["wss://b"])

    assert reasons == ["connection to wss://b lost"]
    assert sub.closed


@pytest.mark.asyncio
async def test_own_close_sends_close_and_does_not_report():
    pool = _pool("wss://a")
    reasons = []
    sub = await pool.subscribe({}, on_event=lambda e: None, on_close=reasons.append)

    await sub.close()
    pool._handle_frame(pool.connections["wss://a"], ["CLOSED", sub.sub_id, "bye"])

    assert pool.connections["wss://a"].ws.sent[-1] == ["CLOSE", sub.sub_id]
    assert reasons == []


@pytest.mark.asyncio
async def test_publish_resolves_on_ok_frames():
    pool = _pool("wss://a", "wss://b")
    pool.urls.append("wss://down")
    event = _signed()

    sends = dict(pool.publish(event))
    tasks = {url: asyncio.ensure_future(aw) for url, aw in sends.items()}
    await asyncio.sleep(0)

    pool._handle_frame(pool.connections["wss://a"], ["OK", event["id"], True, ""])
    pool._handle_frame(pool.connections["wss://b"], ["OK", event["id"], False, "blocked: spam"])
    await asyncio.wait(tasks.values(), timeout=1)

    assert pool.connections["wss://a"].ws.sent == [["EVENT", event]]
    assert tasks["wss://a"].result() == ""
    with pytest.raises(PublishRejected) as excinfo:
        tasks["wss://b"].result()
    assert excinfo.value.reason == "blocked: spam"
    with pytest.raises(RelayError):
        tasks["wss://down"].result()


@pytest.mark.asyncio
async def test_pending_publish_fails_when_pool_closes():
    pool = _pool("wss://a")
    event = _signed()
    task = asyncio.ensure_future(pool.connections["wss://a"].publish(event))
    await asyncio.sleep(0)

    await pool.close()
    await pool.close()

    with pytest.raises(RelayError):
        await task
    assert pool.connections["wss://a"].ws.closed
