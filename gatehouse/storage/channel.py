"""Durable at-least-once work queues for the verification email pipeline.

Two implementations share one contract: ``RedisChannel`` (reliable-queue
pattern on Redis lists) and ``MemoryChannel`` (process-local, for tests and
local development). Messages travel inside a small JSON envelope carrying a
message id and the number of failed deliveries so far; the payload itself is
never modified.

Redelivery is owned by the channel: a consumer either acknowledges a
delivery or hands it back with ``requeue``. Once a message has failed
``max_attempts`` deliveries it is parked on ``<queue>.dead`` instead of being
requeued.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis

from gatehouse.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class DeliveryOutcome(str, Enum):
    """What a consumer handler decided about one delivery."""

    ACK = "ack"
    REQUEUE = "requeue"


@dataclass
class Delivery:
    queue: str
    message_id: str
    payload: Optional[Dict[str, Any]]
    attempts: int
    raw: str


class ChannelError(Exception):
    """Raised when the channel cannot accept or hand out messages."""


class DispatchChannel(Protocol):
    max_attempts: int

    async def connect(self) -> None: ...

    async def declare_queue(self, queue: str) -> None: ...

    async def publish(self, queue: str, payload: Dict[str, Any]) -> str: ...

    async def receive(self, queue: str, timeout: float) -> Optional[Delivery]: ...

    async def ack(self, delivery: Delivery) -> None: ...

    async def requeue(self, delivery: Delivery, *, error: Optional[str] = None) -> bool: ...

    async def dead_letter(self, delivery: Delivery, *, error: Optional[str] = None) -> None: ...

    async def recover(self, queue: str) -> int: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


def dead_letter_queue(queue: str) -> str:
    return f"{queue}.dead"


def _encode_envelope(
    payload: Dict[str, Any],
    *,
    message_id: Optional[str] = None,
    attempts: int = 0,
    last_error: Optional[str] = None,
) -> str:
    envelope: Dict[str, Any] = {
        "id": message_id or str(uuid.uuid4()),
        "attempts": attempts,
        "published_at": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    if last_error:
        envelope["last_error"] = last_error[:500]
    return json.dumps(envelope, separators=(",", ":"), sort_keys=True)


def _decode_envelope(queue: str, raw: str) -> Delivery:
    """Parse an envelope; a corrupt one yields a delivery with no payload."""
    try:
        envelope = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return Delivery(queue=queue, message_id="unknown", payload=None, attempts=0, raw=raw)
    if not isinstance(envelope, dict):
        return Delivery(queue=queue, message_id="unknown", payload=None, attempts=0, raw=raw)
    payload = envelope.get("payload")
    try:
        attempts = int(envelope.get("attempts", 0))
    except (TypeError, ValueError):
        attempts = 0
    return Delivery(
        queue=queue,
        message_id=str(envelope.get("id") or "unknown"),
        payload=payload if isinstance(payload, dict) else None,
        attempts=attempts,
        raw=raw,
    )


def _retry_envelope(delivery: Delivery, error: Optional[str]) -> str:
    return _encode_envelope(
        delivery.payload if delivery.payload is not None else {"raw": delivery.raw},
        message_id=delivery.message_id,
        attempts=delivery.attempts + 1,
        last_error=error,
    )


class RedisChannel:
    """Reliable queue on Redis lists.

    ``publish`` LPUSHes onto ``dispatch:queue:<name>``; ``receive`` BLMOVEs the
    oldest entry into ``dispatch:processing:<name>`` so an unacknowledged
    message survives a consumer crash. ``ack`` removes it from the processing
    list, ``requeue`` moves it back to the tail of the queue with its
    attempt count bumped.
    """

    # KEYS: processing, target; ARGV: original envelope, replacement envelope
    _MOVE_SCRIPT = """
local removed = redis.call('LREM', KEYS[1], 1, ARGV[1])
if removed == 0 then
  return 0
end
redis.call('LPUSH', KEYS[2], ARGV[2])
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.max_attempts = max_attempts
        self.socket_timeout = socket_timeout
        self._client: Optional[aioredis.Redis] = None
        self._move = None

    @staticmethod
    def _queue_key(queue: str) -> str:
        return f"dispatch:queue:{queue}"

    @staticmethod
    def _processing_key(queue: str) -> str:
        return f"dispatch:processing:{queue}"

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise ChannelError("channel not connected")
        return self._client

    async def connect(self) -> None:
        client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._client = client
        self._move = client.register_script(self._MOVE_SCRIPT)

    def verify_connection(self) -> None:
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def declare_queue(self, queue: str) -> None:
        await self.client.sadd("dispatch:queues", queue)

    async def publish(self, queue: str, payload: Dict[str, Any]) -> str:
        raw = _encode_envelope(payload)
        await self.client.lpush(self._queue_key(queue), raw)
        return json.loads(raw)["id"]

    async def receive(self, queue: str, timeout: float) -> Optional[Delivery]:
        raw = await self.client.blmove(
            self._queue_key(queue),
            self._processing_key(queue),
            timeout,
            src="RIGHT",
            dest="LEFT",
        )
        if raw is None:
            return None
        return _decode_envelope(queue, raw)

    async def ack(self, delivery: Delivery) -> None:
        await self.client.lrem(self._processing_key(delivery.queue), 1, delivery.raw)

    async def requeue(self, delivery: Delivery, *, error: Optional[str] = None) -> bool:
        if delivery.attempts + 1 >= self.max_attempts:
            await self.dead_letter(delivery, error=error)
            return False
        moved = await self._move(
            keys=[self._processing_key(delivery.queue), self._queue_key(delivery.queue)],
            args=[delivery.raw, _retry_envelope(delivery, error)],
        )
        if not moved:
            logger.warning(
                "dispatch_requeue_missing", queue=delivery.queue, message_id=delivery.message_id
            )
        return True

    async def dead_letter(self, delivery: Delivery, *, error: Optional[str] = None) -> None:
        await self._move(
            keys=[
                self._processing_key(delivery.queue),
                self._queue_key(dead_letter_queue(delivery.queue)),
            ],
            args=[delivery.raw, _retry_envelope(delivery, error)],
        )

    async def recover(self, queue: str) -> int:
        """Return messages stranded in the processing list to the queue."""
        recovered = 0
        while True:
            raw = await self.client.lmove(
                self._processing_key(queue), self._queue_key(queue), "RIGHT", "RIGHT"
            )
            if raw is None:
                return recovered
            recovered += 1

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()


class MemoryChannel:
    """Process-local channel with the same delivery semantics as ``RedisChannel``."""

    POLL_INTERVAL_SECONDS = 0.01

    def __init__(self, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self.max_attempts = max_attempts
        self.connections = 0
        self._connected = False
        self._queues: Dict[str, Deque[str]] = {}
        self._processing: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def _require_connection(self) -> None:
        if not self._connected:
            raise ChannelError("channel not connected")

    def _queue(self, queue: str) -> Deque[str]:
        if queue not in self._queues:
            raise ChannelError(f"queue {queue!r} not declared")
        return self._queues[queue]

    def verify_connection(self) -> None:
        return None

    async def connect(self) -> None:
        with self._lock:
            self._connected = True
            self.connections += 1

    async def declare_queue(self, queue: str) -> None:
        self._require_connection()
        with self._lock:
            self._queues.setdefault(queue, deque())
            self._processing.setdefault(queue, [])
            self._queues.setdefault(dead_letter_queue(queue), deque())

    async def publish(self, queue: str, payload: Dict[str, Any]) -> str:
        self._require_connection()
        raw = _encode_envelope(payload)
        with self._lock:
            self._queue(queue).appendleft(raw)
        return json.loads(raw)["id"]

    def _take(self, queue: str) -> Optional[str]:
        with self._lock:
            pending = self._queue(queue)
            if not pending:
                return None
            raw = pending.pop()
            self._processing[queue].append(raw)
            return raw

    async def receive(self, queue: str, timeout: float) -> Optional[Delivery]:
        self._require_connection()
        deadline = time.monotonic() + timeout
        while True:
            raw = self._take(queue)
            if raw is not None:
                return _decode_envelope(queue, raw)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # Yield even on a zero timeout so a polling loop cannot starve the event loop
                await asyncio.sleep(0)
                return None
            await asyncio.sleep(min(self.POLL_INTERVAL_SECONDS, remaining))

    def _move(self, delivery: Delivery, target: str, raw: str) -> bool:
        with self._lock:
            in_flight = self._processing.get(delivery.queue, [])
            if delivery.raw not in in_flight:
                return False
            in_flight.remove(delivery.raw)
            self._queues.setdefault(target, deque()).appendleft(raw)
            return True

    async def ack(self, delivery: Delivery) -> None:
        with self._lock:
            in_flight = self._processing.get(delivery.queue, [])
            if delivery.raw in in_flight:
                in_flight.remove(delivery.raw)

    async def requeue(self, delivery: Delivery, *, error: Optional[str] = None) -> bool:
        if delivery.attempts + 1 >= self.max_attempts:
            await self.dead_letter(delivery, error=error)
            return False
        self._move(delivery, delivery.queue, _retry_envelope(delivery, error))
        return True

    async def dead_letter(self, delivery: Delivery, *, error: Optional[str] = None) -> None:
        self._move(delivery, dead_letter_queue(delivery.queue), _retry_envelope(delivery, error))

    async def recover(self, queue: str) -> int:
        with self._lock:
            stranded = self._processing.get(queue, [])
            pending = self._queues.setdefault(queue, deque())
            for raw in stranded:
                pending.append(raw)
            recovered = len(stranded)
            self._processing[queue] = []
        return recovered

    async def close(self) -> None:
        # Producer and consumer may share one instance in-process, so closing
        # one side must not disconnect the other.
        return None

    def pending(self, queue: str) -> List[Dict[str, Any]]:
        """Payloads waiting on ``queue``, oldest first."""
        with self._lock:
            raws = list(reversed(self._queues.get(queue, deque())))
        return [_decode_envelope(queue, raw).payload for raw in raws]

    def in_flight(self, queue: str) -> int:
        with self._lock:
            return len(self._processing.get(queue, []))
