"""
Tests for the connection supervisor: the inbound pipeline (age window,
replay dedupe, decrypt failures) and the pool/subscription lifecycle.
"""

import asyncio
import time

import pytest

from katal import messages as m
from katal.channel import SecureChannel
from katal.replay import ReplayCache
from katal.supervisor import ConnectionState, ConnectionSupervisor
from katal.tasks import BackgroundTasks

from conftest import FakePool, build_dm


class Inbox:
    def __init__(self):
        self.received = []

    async def __call__(self, sender, text):
        self.received.append((sender, text))


def _supervisor(identity, pool_factory=None, clock=time.time, **kwargs):
    inbox = Inbox()
    sup = ConnectionSupervisor(
        ["wss://a", "wss://b"],
        SecureChannel(identity),
        ReplayCache(100),
        inbox,
        BackgroundTasks(),
        pool_factory=pool_factory,
        settle_delay=0,
        clock=clock,
        **kwargs,
    )
    return sup, inbox


@pytest.mark.asyncio
async def test_fresh_dm_reaches_handler(bot_identity, user_identity, make_dm):
    sup, inbox = _supervisor(bot_identity)
    event = make_dm(user_identity, bot_identity.pubkey, "  help  ")

    assert await sup.process_event(event)
    assert inbox.received == [(user_identity.pubkey, "help")]
    assert sup.replay.has(event["id"])


@pytest.mark.asyncio
async def test_nip18_marker_is_stripped(bot_identity, user_identity, make_dm):
    sup, inbox = _supervisor(bot_identity)
    event = make_dm(user_identity, bot_identity.pubkey, "[//]: # (nip18)\nstats")

    await sup.process_event(event)

    assert inbox.received == [(user_identity.pubkey, "stats")]


@pytest.mark.asyncio
async def test_old_event_is_ignored_and_not_recorded(bot_identity, user_identity, make_dm):
    sup, inbox = _supervisor(bot_identity)
    event = make_dm(user_identity, bot_identity.pubkey, "help", created_at=int(time.time()) - 300)

    assert not await sup.process_event(event)
    assert inbox.received == []
    assert not sup.replay.has(event["id"])


@pytest.mark.asyncio
async def test_event_window_is_configurable(bot_identity, user_identity, make_dm):
    sup, inbox = _supervisor(bot_identity, event_window=600)
    event = make_dm(user_identity, bot_identity.pubkey, "help", created_at=int(time.time()) - 300)

    assert await sup.process_event(event)


@pytest.mark.asyncio
async def test_duplicate_delivery_is_handled_once(bot_identity, user_identity, make_dm):
    sup, inbox = _supervisor(bot_identity)
    event = make_dm(user_identity, bot_identity.pubkey, "download https://example.com/a.iso")

    # Same event from three relays at once.
    results = await asyncio.gather(*(sup.process_event(dict(event)) for _ in range(3)))

    assert results.count(True) == 1
    assert len(inbox.received) == 1


@pytest.mark.asyncio
async def test_undecryptable_event_is_dropped_silently(bot_identity, user_identity):
    sup, inbox = _supervisor(bot_identity)
    event = m.build_signed_message(user_identity, m.DIRECT_MSG, [["p", bot_identity.pubkey]], "not encrypted")

    assert not await sup.process_event(event)
    assert inbox.received == []
    # Still recorded: redeliveries of the same junk are skipped cheaply.
    assert sup.replay.has(event["id"])


@pytest.mark.asyncio
async def test_handler_errors_do_not_escape(bot_identity, user_identity, make_dm):
    async def broken(sender, text):
        raise RuntimeError("boom")

    sup, _ = _supervisor(bot_identity)
    sup.handler = broken

    assert await sup.process_event(make_dm(user_identity, bot_identity.pubkey, "help"))


@pytest.mark.asyncio
async def test_connect_subscribes_with_since_window(bot_identity, pool_factory):
    sup, _ = _supervisor(bot_identity, pool_factory=pool_factory, clock=lambda: 1_000_000.0)

    await sup.connect()

    (pool,) = pool_factory.pools
    assert pool.opened
    assert sup.pool is pool
    assert sup.state is ConnectionState.SUBSCRIBED
    assert pool.subscriptions[0].filter == {"kinds": [4], "#p": [bot_identity.pubkey], "since": 1_000_000 - 120}


@pytest.mark.asyncio
async def test_reconnect_tears_down_previous_pool(bot_identity, pool_factory):
    sup, _ = _supervisor(bot_identity, pool_factory=pool_factory)

    await sup.connect()
    await sup.connect()

    first, second = pool_factory.pools
    assert first.closed and first.subscriptions[0].closed
    assert not second.closed
    assert sup.pool is second


@pytest.mark.asyncio
async def test_pool_without_close_is_refused(bot_identity):
    sup, _ = _supervisor(bot_identity, pool_factory=lambda urls: object())

    with pytest.raises(TypeError):
        await sup.connect()
    assert sup.pool is None


@pytest.mark.asyncio
async def test_subscription_events_are_dispatched_in_background(bot_identity, user_identity, make_dm, pool_factory):
    sup, inbox = _supervisor(bot_identity, pool_factory=pool_factory)
    await sup.connect()

    sub = pool_factory.pools[0].subscriptions[0]
    sub.on_event(make_dm(user_identity, bot_identity.pubkey, "time"))
    await sup.tasks.wait_idle()

    assert inbox.received == [(user_identity.pubkey, "time")]


@pytest.mark.asyncio
async def test_unexpected_close_triggers_one_reconnect(bot_identity, pool_factory, eventually):
    sup, _ = _supervisor(bot_identity, pool_factory=pool_factory, reconnect_interval=3600, close_retry_delay=0)
    runner = asyncio.create_task(sup.run())

    await eventually(lambda: sup.state is ConnectionState.SUBSCRIBED)
    pool_factory.pools[0].subscriptions[0].on_close("relay restarted")
    await eventually(lambda: len(pool_factory.pools) == 2 and sup.state is ConnectionState.SUBSCRIBED)

    assert pool_factory.pools[0].closed
    await sup.close()
    await asyncio.wait_for(runner, 1)
    assert len(pool_factory.pools) == 2
    assert pool_factory.pools[1].closed
    assert sup.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_scheduled_restart_replaces_pool(bot_identity, pool_factory, eventually):
    sup, _ = _supervisor(bot_identity, pool_factory=pool_factory, reconnect_interval=0.05)
    runner = asyncio.create_task(sup.run())

    await eventually(lambda: len(pool_factory.pools) >= 3)

    await sup.close()
    await asyncio.wait_for(runner, 1)
    assert all(p.closed for p in pool_factory.pools)


@pytest.mark.asyncio
async def test_close_after_shutdown_is_not_reported(bot_identity, pool_factory):
    sup, _ = _supervisor(bot_identity, pool_factory=pool_factory)
    await sup.connect()
    sub = pool_factory.pools[0].subscriptions[0]

    await sup.close()
    sub.on_close("socket closed")

    assert sup.state is ConnectionState.DISCONNECTED
    assert sup.pool is None


@pytest.mark.asyncio
async def test_health_report(bot_identity, pool_factory):
    sup, _ = _supervisor(bot_identity, pool_factory=pool_factory)
    sup.replay.record("x", 1.0)
    await sup.connect()

    report = sup.health_report()

    assert report == {
        "state": "subscribed",
        "cached_events": 1,
        "authorized": 0,
        "connected_relays": 2,
        "total_relays": 2,
    }


@pytest.mark.asyncio
async def test_dm_for_someone_else_is_dropped(bot_identity, user_identity):
    sup, inbox = _supervisor(bot_identity)
    event = build_dm(user_identity, user_identity.pubkey, "help")

    assert not await sup.process_event(event)
    assert inbox.received == []
    assert not sup.replay.has(event["id"])


@pytest.mark.asyncio
async def test_failed_subscribe_closes_the_new_pool(bot_identity):
    class BrokenPool(FakePool):
        async def subscribe(self, *args, **kwargs):
            raise RuntimeError("relay refused REQ")

    pools = []

    def factory(urls):
        pools.append(BrokenPool(urls))
        return pools[-1]

    sup, _ = _supervisor(bot_identity, pool_factory=factory)

    with pytest.raises(RuntimeError):
        await sup.connect()

    (pool,) = pools
    assert pool.opened and pool.closed
    assert sup.pool is None
    assert sup.state is ConnectionState.DISCONNECTED
