"""Verification email dispatch: producer, consumer and message codec.

The producer runs inside request handlers and only ever publishes; the
consumer runs as its own long-lived loop (a separate process or a task in
the API process) and owns delivery. The two share nothing but the queue name
and the payload shape ``{"email": ..., "token": ...}``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.errors import DependencyUnavailableError
from gatehouse.storage.channel import DeliveryOutcome

if TYPE_CHECKING:
    from gatehouse.service.email import EmailService
    from gatehouse.storage.channel import Delivery, DispatchChannel

logger = get_logger(__name__)

DEFAULT_QUEUE_NAME = "email_verification"
DEFAULT_POLL_TIMEOUT_SECONDS = 5.0
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
MAX_RETRY_BACKOFF_SECONDS = 60.0
DEFAULT_DELIVERY_TIMEOUT_SECONDS = 60.0


class UndeliverableMessage(ValueError):
    """Payload can never be delivered; retrying it is pointless."""


@dataclass(frozen=True)
class VerificationMessage:
    email: str
    token: str

    def to_payload(self) -> Dict[str, str]:
        return {"email": self.email, "token": self.token}

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "VerificationMessage":
        if not isinstance(payload, dict):
            raise UndeliverableMessage("payload is not an object")
        email = payload.get("email")
        token = payload.get("token")
        if not isinstance(email, str) or "@" not in email:
            raise UndeliverableMessage("payload has no usable email")
        if not isinstance(token, str) or not token:
            raise UndeliverableMessage("payload has no token")
        return cls(email=email, token=token)


class DispatchProducer:
    """Publishes verification messages, connecting to the channel on first use.

    A failed publish drops the connection so the next call reconnects and
    re-declares the queue.
    """

    def __init__(self, channel: "DispatchChannel", queue_name: str = DEFAULT_QUEUE_NAME) -> None:
        self.channel = channel
        self.queue_name = queue_name
        self._ready = False

    @property
    def is_connected(self) -> bool:
        return self._ready

    async def _ensure_ready(self) -> None:
        if self._ready:
            return
        await self.channel.connect()
        await self.channel.declare_queue(self.queue_name)
        self._ready = True
        logger.info("dispatch_producer_connected", queue=self.queue_name)

    async def publish(self, payload: Dict[str, Any]) -> str:
        try:
            await self._ensure_ready()
            return await self.channel.publish(self.queue_name, payload)
        except Exception as exc:
            await self._reset()
            logger.error(
                "dispatch_publish_failed",
                queue=self.queue_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyUnavailableError("dispatch channel unavailable") from exc

    async def _reset(self) -> None:
        self._ready = False
        try:
            await self.channel.close()
        except Exception as exc:
            logger.warning("dispatch_channel_close_failed", error=str(exc))

    async def close(self) -> None:
        if self._ready:
            await self._reset()


class VerificationEmailHandler:
    """Delivers one verification message through the SMTP transport."""

    def __init__(
        self,
        email: "EmailService",
        *,
        timeout_seconds: Optional[float] = DEFAULT_DELIVERY_TIMEOUT_SECONDS,
    ) -> None:
        self.email = email
        self.timeout_seconds = timeout_seconds

    async def __call__(self, payload: Optional[Dict[str, Any]]) -> DeliveryOutcome:
        message = VerificationMessage.from_payload(payload)
        send = asyncio.to_thread(self.email.send_email_verification, message.email, message.token)
        if self.timeout_seconds:
            sent = await asyncio.wait_for(send, self.timeout_seconds)
        else:
            sent = await send
        return DeliveryOutcome.ACK if sent else DeliveryOutcome.REQUEUE


Handler = Callable[[Optional[Dict[str, Any]]], Awaitable[DeliveryOutcome]]


class DispatchConsumer:
    """Pulls messages one at a time and acknowledges or requeues each.

    Any handler failure (False result, exception, timeout) requeues the
    message after an exponential backoff. The channel dead-letters it once
    its delivery cap is reached; undeliverable payloads go straight there.
    """

    def __init__(
        self,
        channel: "DispatchChannel",
        handler: Handler,
        *,
        queue_name: str = DEFAULT_QUEUE_NAME,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        max_backoff: float = MAX_RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.channel = channel
        self.handler = handler
        self.queue_name = queue_name
        self.poll_timeout = poll_timeout
        self.retry_backoff = retry_backoff
        self.max_backoff = max_backoff
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def prepare(self) -> None:
        """Connect, declare the queue and reclaim deliveries stranded by a crash."""
        await self.channel.connect()
        await self.channel.declare_queue(self.queue_name)
        recovered = await self.channel.recover(self.queue_name)
        if recovered:
            logger.warning("dispatch_messages_recovered", queue=self.queue_name, count=recovered)

    async def start(self) -> None:
        """Start the background consume loop."""
        if self._running:
            logger.warning("dispatch_consumer_already_running")
            return
        await self.prepare()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("dispatch_consumer_started", queue=self.queue_name)

    async def stop(self) -> None:
        """Stop the background consume loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.channel.close()
        logger.info("dispatch_consumer_stopped", queue=self.queue_name)

    def _backoff_for(self, delivery: "Delivery") -> float:
        return min(self.max_backoff, self.retry_backoff * (2 ** delivery.attempts))

    async def run_once(self) -> Optional[DeliveryOutcome]:
        """Process at most one message; None when the queue stayed empty."""
        delivery = await self.channel.receive(self.queue_name, self.poll_timeout)
        if delivery is None:
            return None
        log = logger.bind(queue=delivery.queue, message_id=delivery.message_id, attempts=delivery.attempts)
        error: Optional[str] = None
        try:
            outcome = await self.handler(delivery.payload)
        except UndeliverableMessage as exc:
            log.error("dispatch_message_undeliverable", error=str(exc))
            await self.channel.dead_letter(delivery, error=str(exc))
            return DeliveryOutcome.REQUEUE
        except asyncio.TimeoutError:
            outcome, error = DeliveryOutcome.REQUEUE, "delivery timed out"
        except Exception as exc:
            outcome, error = DeliveryOutcome.REQUEUE, f"{type(exc).__name__}: {exc}"

        if outcome == DeliveryOutcome.ACK:
            await self.channel.ack(delivery)
            log.info("dispatch_message_delivered", recipient=redact_email((delivery.payload or {}).get("email")))
            return outcome

        error = error or "transport reported failure"
        final = delivery.attempts + 1 >= self.channel.max_attempts
        if not final:
            delay = self._backoff_for(delivery)
            log.warning("dispatch_delivery_failed", error=error, retry_in_seconds=delay)
            if delay > 0:
                await asyncio.sleep(delay)
        if await self.channel.requeue(delivery, error=error):
            return DeliveryOutcome.REQUEUE
        log.error("dispatch_message_dead_lettered", error=error)
        return DeliveryOutcome.REQUEUE

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                backoff = min(self.max_backoff, 2 ** min(consecutive_errors, 6))
                logger.error(
                    "dispatch_consumer_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
                try:
                    await self.channel.close()
                    await self.prepare()
                except Exception as reconnect_exc:
                    logger.warning("dispatch_consumer_reconnect_failed", error=str(reconnect_exc))
