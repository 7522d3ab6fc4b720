"""
gateway.py — reliable-ish outbound publishing.

PublishGateway sends one signed event to every relay at once and counts each
relay's verdict on its own: partial success is the normal case. Only when
*no* relay accepted does it retry, with linear backoff, reusing the same
signed event (same id, so relays that did get it just dedupe).

DirectMessenger sits on top: plaintext in, encrypted + signed DM out.
Delivery is fire-and-forget from the user's point of view; there are no
receipts, failures end up in the log.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from . import messages as m
from .channel import SecureChannel
from .utils import short

log = logging.getLogger(__name__)

PUBLISH_TIMEOUT = 10.0
MAX_RETRIES = 2
RETRY_DELAY = 1.0
POOL_WAIT = 1.0


class Publisher(Protocol):
    def publish(self, event: m.SignedMessage) -> List[Tuple[str, Awaitable[Any]]]:
        ...


@dataclass
class PublishOutcome:
    """Per-relay verdicts for one publish attempt."""

    per_endpoint: Dict[str, bool] = field(default_factory=dict)
    attempts: int = 1

    @property
    def success_count(self) -> int:
        return sum(1 for ok in self.per_endpoint.values() if ok)

    @property
    def fail_count(self) -> int:
        return sum(1 for ok in self.per_endpoint.values() if not ok)

    @property
    def delivered(self) -> bool:
        return self.success_count > 0


@dataclass
class OutboundReply:
    """One DM on its way out; lives only as long as the send workflow."""

    recipient: str
    plaintext: str
    outcome: Optional[PublishOutcome] = None

    @property
    def attempts(self) -> int:
        return self.outcome.attempts if self.outcome else 0


def _late_outcome(url: str, event_id: str) -> Callable[[asyncio.Future], None]:
    def _done(fut: asyncio.Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is None:
            log.debug("Late OK from %s for %s", url, event_id[:8])
        else:
            log.debug("Late failure from %s for %s: %s", url, event_id[:8], exc)
    return _done


class PublishGateway:
    def __init__(
        self,
        relays: List[str],
        pool_provider: Callable[[], Optional[Publisher]],
        *,
        timeout: float = PUBLISH_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        pool_wait: float = POOL_WAIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.relays = list(relays)
        self.pool_provider = pool_provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.pool_wait = pool_wait
        self._sleep = sleep

    def _all_failed(self) -> PublishOutcome:
        return PublishOutcome({url: False for url in self.relays} or {"<no relays>": False})

    async def publish(self, event: m.SignedMessage) -> PublishOutcome:
        """
        One attempt: fan out, wait for every verdict or the timeout, count.

        Verdicts still outstanding at the timeout count as failed here but the
        sends keep going in the background.
        """
        pool = self.pool_provider()
        if pool is None:
            # Probably mid-reconnect; give it a moment, then look again.
            log.warning("Pool not available for publish, retrying in %.1fs", self.pool_wait)
            await self._sleep(self.pool_wait)
            pool = self.pool_provider()
            if pool is None:
                log.warning("Pool unavailable after wait")
                return self._all_failed()

        try:
            sends = pool.publish(event)
        except Exception as exc:
            log.warning("Publish could not start: %s", exc)
            return self._all_failed()
        if not sends:
            return self._all_failed()

        futures: Dict[asyncio.Future, str] = {asyncio.ensure_future(aw): url for url, aw in sends}
        done, pending = await asyncio.wait(futures.keys(), timeout=self.timeout)

        outcome = PublishOutcome()
        for fut, url in futures.items():
            if fut in done:
                exc = None if fut.cancelled() else fut.exception()
                ok = not fut.cancelled() and exc is None
                if not ok:
                    log.debug("Publish to %s failed: %s", url, exc)
                outcome.per_endpoint[url] = ok
            else:
                outcome.per_endpoint[url] = False
                fut.add_done_callback(_late_outcome(url, event["id"]))
        if pending:
            log.warning("Publishing timeout on %d relays, but message may still be delivered", len(pending))
        return outcome

    async def deliver(self, event: m.SignedMessage) -> PublishOutcome:
        """publish() with bounded retries when every relay failed."""
        attempt = 1
        while True:
            outcome = await self.publish(event)
            outcome.attempts = attempt
            log.info("Publish results: %d successful, %d failed", outcome.success_count, outcome.fail_count)
            if outcome.success_count > 0 or outcome.fail_count == 0:
                return outcome
            if attempt > self.max_retries:
                log.error("Max retries exceeded for event %s", event["id"][:8])
                return outcome
            log.info("Retrying publish (attempt %d/%d)...", attempt + 1, self.max_retries + 1)
            await self._sleep(self.retry_delay * attempt)
            attempt += 1


class DirectMessenger:
    """encrypt -> sign -> publish with retry, for replies and broadcasts."""

    def __init__(self, channel: SecureChannel, gateway: PublishGateway) -> None:
        self.channel = channel
        self.gateway = gateway

    async def send(self, recipient: str, plaintext: str) -> OutboundReply:
        reply = OutboundReply(recipient, plaintext)
        try:
            event = await self.channel.direct_message(recipient, plaintext)
        except Exception as exc:
            log.error("Failed to build DM to %s: %s", short(recipient), exc)
            reply.outcome = PublishOutcome(attempts=0)
            return reply
        reply.outcome = await self.gateway.deliver(event)
        if reply.outcome.delivered:
            log.info("Sent DM to %s (%d relays accepted).", short(recipient), reply.outcome.success_count)
        else:
            log.warning("Failed to deliver DM to %s.", short(recipient))
        return reply

    async def broadcast(self, text: str) -> PublishOutcome:
        event = self.channel.public_note(text)
        log.info("Publishing public note %s", event["id"][:8])
        outcome = await self.gateway.deliver(event)
        if not outcome.delivered:
            log.warning("No relays accepted the public note")
        return outcome
