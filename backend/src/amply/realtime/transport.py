"""Push transport for change events: Redis pub/sub, NATS or an in-process broker."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from nats.aio.client import Client as NATSClient
from nats.errors import Error as NatsError
from redis.exceptions import RedisError

from app.monitoring.metrics import (
    realtime_subscriptions,
    realtime_transport_restarts_total,
    topic_label,
)

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_NATS_ERRORS: tuple[type[BaseException], ...] = (
    NatsError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
InterruptHandler = Callable[[str], Any]

BACKENDS = ("redis", "nats", "local")


@dataclass(slots=True)
class BrokerConfig:
    """Configuration used for wiring the push transport."""

    redis_url: str | None = None
    nats_url: str | None = None
    prefix: str = "amply.realtime"
    node_id: str | None = None
    backend_preference: str | None = None


class Subscription:
    """Handle returned when subscribing to a topic."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class TransportUnavailableError(RuntimeError):
    """Raised when a broker backend cannot accept a publish or subscribe."""


@dataclass(slots=True)
class _ReaderState:
    """Bookkeeping for a subscription served by a reader task."""

    topic: str
    channel: str
    backend: str
    handler: MessageHandler
    on_interrupted: InterruptHandler | None = None
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    queue: asyncio.Queue[str | None] | None = None
    active: bool = True
    suspending: bool = False


@dataclass(slots=True)
class _NatsState:
    topic: str
    on_interrupted: InterruptHandler | None
    subscription: Subscription | None = None


@dataclass(slots=True)
class _LocalBroker:
    """In-process fan-out used when no external broker is configured."""

    channels: dict[str, set[asyncio.Queue[str | None]]] = field(default_factory=dict)

    def attach(self, channel: str, queue: asyncio.Queue[str | None]) -> None:
        self.channels.setdefault(channel, set()).add(queue)

    def detach(self, channel: str, queue: asyncio.Queue[str | None]) -> None:
        queues = self.channels.get(channel)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            self.channels.pop(channel, None)

    def publish(self, channel: str, encoded: str) -> int:
        queues = list(self.channels.get(channel, ()))
        for queue in queues:
            queue.put_nowait(encoded)
        return len(queues)


_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


def _decode(raw: Any, channel: str) -> dict[str, Any] | None:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarded malformed realtime payload", extra={"channel": channel})
        return None
    if not isinstance(payload, dict):
        logger.warning("Discarded non-object realtime payload", extra={"channel": channel})
        return None
    return payload


async def _call_interrupt(callback: InterruptHandler, reason: str) -> None:
    try:
        result = callback(reason)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Subscription interruption callback failed", extra={"reason": reason})


class RedisNATSTransport:
    """Topic based pub/sub over Redis, NATS or the in-process broker.

    Subscribers that pass ``on_interrupted`` own their recovery: when the
    backend drops their stream the subscription is closed and the callback
    runs with a reason. Subscribers without it rely on the transport's own
    Redis recovery, which rebuilds the client and reattaches readers.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._redis_states: list[_ReaderState] = []
        self._redis_recovery_lock = asyncio.Lock()
        self._redis_recovery_task: asyncio.Task[Any] | None = None
        self._nats: Any | None = None
        self._nats_states: list[_NatsState] = []
        self._local = _LocalBroker()
        self._local_states: list[_ReaderState] = []
        self._started = False

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect_redis()
        if self._config.nats_url:
            if self._nats is None:
                self._nats = NATSClient()
            if not self._nats.is_connected:
                try:
                    await self._nats.connect(
                        self._config.nats_url,
                        name=self._config.node_id,
                        disconnected_cb=self._on_nats_disconnected,
                    )
                except Exception:
                    logger.exception("Failed to connect to NATS realtime backend")
                    raise
        self._started = True

    async def stop(self) -> None:
        for state in list(self._redis_states):
            if state.subscription is not None:
                await state.subscription.close()
        self._redis_states.clear()
        if self._redis_recovery_task is not None:
            self._redis_recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._redis_recovery_task
            self._redis_recovery_task = None
        for state in list(self._nats_states):
            if state.subscription is not None:
                await state.subscription.close()
        self._nats_states.clear()
        for state in list(self._local_states):
            if state.subscription is not None:
                await state.subscription.close()
        self._local_states.clear()
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None
        if self._nats is not None and self._nats.is_connected:
            await self._nats.drain()
            await self._nats.close()
        self._started = False

    # ------------------------------------------------------------------
    # Redis helpers
    # ------------------------------------------------------------------
    async def _connect_redis(self) -> None:
        if self._config.redis_url is None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except _REDIS_ERRORS + (OSError,):
            logger.exception("Failed to connect to Redis realtime backend")
            with contextlib.suppress(Exception):
                await client.aclose()
            raise
        self._redis = client

    async def _pause_reader(self, state: _ReaderState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.aclose()
        state.pubsub = None
        if state.queue is not None:
            self._local.detach(state.channel, state.queue)
            state.queue = None
        state.suspending = False

    async def _close_reader(self, state: _ReaderState) -> None:
        was_active = state.active
        state.active = False
        await self._pause_reader(state)
        registry = self._redis_states if state.backend == "redis" else self._local_states
        if state in registry:
            registry.remove(state)
        if was_active:
            realtime_subscriptions.labels(topic_label(state.topic), state.backend).dec()

    async def _restart_redis(self, reason: str) -> None:
        if self._config.redis_url is None:
            return
        async with self._redis_recovery_lock:
            for state in list(self._redis_states):
                await self._pause_reader(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.aclose()
                self._redis = None
            await self._connect_redis()
            for state in [state for state in self._redis_states if state.active]:
                try:
                    await self._attach_redis_reader(state)
                except Exception:
                    logger.exception(
                        "Failed to restore Redis subscription", extra={"channel": state.channel}
                    )
                    raise

        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._redis_states)},
        )

    async def _attach_redis_reader(self, state: _ReaderState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                payload = _decode(message.get("data"), state.channel)
                if payload is None:
                    continue
                await self._dispatch(state, payload)

        self._start_reader(state, reader(), f"realtime-redis-{state.channel}")

    def _start_reader(self, state: _ReaderState, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        state.task = task
        if state.subscription is not None:
            state.subscription._task = task
        task.add_done_callback(
            lambda finished: asyncio.create_task(self._on_reader_done(state, finished))
        )

    async def _dispatch(self, state: _ReaderState, payload: dict[str, Any]) -> None:
        try:
            await state.handler(payload)
        except Exception:
            logger.exception("Realtime handler failed", extra={"channel": state.channel})

    async def _on_reader_done(self, state: _ReaderState, task: asyncio.Task[Any]) -> None:
        state.task = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        reason = "reader_failed" if exc is not None else "reader_stopped"
        logger.warning(
            "Realtime subscription reader stopped",
            exc_info=exc,
            extra={"channel": state.channel, "backend": state.backend},
        )
        if state.on_interrupted is not None:
            await self._close_reader(state)
            await _call_interrupt(state.on_interrupted, reason)
            return
        if state.backend == "redis":
            self._trigger_redis_recovery(reason)
        else:
            await self._close_reader(state)

    def _trigger_redis_recovery(self, reason: str) -> None:
        if self._config.redis_url is None:
            return
        if self._redis_recovery_task is not None and not self._redis_recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._redis_recovery_task = asyncio.create_task(
            self._redis_recovery_runner(reason), name="realtime-redis-recovery"
        )

    async def _redis_recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            if delay:
                await asyncio.sleep(delay)
            try:
                await self._restart_redis(reason)
            except Exception:
                attempt += 1
                logger.warning(
                    "Redis realtime recovery attempt failed",
                    exc_info=True,
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._redis_recovery_task = None

    # ------------------------------------------------------------------
    # NATS helpers
    # ------------------------------------------------------------------
    async def _on_nats_disconnected(self) -> None:
        states = [state for state in self._nats_states if state.on_interrupted is not None]
        for state in states:
            if state.subscription is not None:
                await state.subscription.close()
            await _call_interrupt(state.on_interrupted, "nats_disconnected")

    def _require_nats(self) -> Any:
        if self._nats is None or not self._nats.is_connected:
            raise TransportUnavailableError("NATS backend is not connected")
        return self._nats

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    def channel_name(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    def default_backend(self) -> str:
        preference = (self._config.backend_preference or "").strip().lower()
        if preference:
            if preference not in BACKENDS:
                raise TransportUnavailableError(f"Unsupported backend '{preference}'")
            return preference
        if self._config.redis_url:
            return "redis"
        if self._config.nats_url:
            return "nats"
        return "local"

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        backend: str | None = None,
    ) -> None:
        target = backend or self.default_backend()
        channel = self.channel_name(topic)
        encoded = json.dumps(payload, default=str)
        if target == "redis":
            if self._redis is None:
                try:
                    await self._connect_redis()
                except _REDIS_ERRORS + (OSError,) as exc:
                    raise TransportUnavailableError("Redis backend is unavailable") from exc
            if self._redis is None:
                raise TransportUnavailableError("Redis backend is not configured")
            try:
                await self._redis.publish(channel, encoded)
            except _REDIS_ERRORS as exc:
                self._trigger_redis_recovery("publish_failed")
                raise TransportUnavailableError("Redis backend is unavailable") from exc
            logger.debug("Published realtime payload via Redis", extra={"channel": channel})
            return
        if target == "nats":
            client = self._require_nats()
            try:
                await client.publish(channel, encoded.encode("utf-8"))
            except _NATS_ERRORS as exc:
                raise TransportUnavailableError("NATS backend is unavailable") from exc
            logger.debug("Published realtime payload via NATS", extra={"subject": channel})
            return
        if target == "local":
            delivered = self._local.publish(channel, encoded)
            logger.debug(
                "Published realtime payload locally",
                extra={"channel": channel, "subscribers": delivered},
            )
            return
        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------
    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        backend: str | None = None,
        on_interrupted: InterruptHandler | None = None,
    ) -> Subscription:
        target = backend or self.default_backend()
        channel = self.channel_name(topic)

        if target in ("redis", "local"):
            state = _ReaderState(
                topic=topic,
                channel=channel,
                backend=target,
                handler=handler,
                on_interrupted=on_interrupted,
            )

            async def cleanup() -> None:
                await self._close_reader(state)

            subscription = Subscription(channel, cleanup, None)
            state.subscription = subscription
            if target == "redis":
                await self._subscribe_redis(state)
            else:
                self._subscribe_local(state)
            realtime_subscriptions.labels(topic_label(topic), target).inc()
            return subscription

        if target == "nats":
            client = self._require_nats()
            nats_state = _NatsState(topic=topic, on_interrupted=on_interrupted)

            async def callback(message: Any) -> None:
                payload = _decode(message.data, channel)
                if payload is None:
                    return
                try:
                    await handler(payload)
                except Exception:
                    logger.exception("Realtime handler failed", extra={"subject": channel})

            try:
                nats_subscription = await client.subscribe(channel, cb=callback)
            except _NATS_ERRORS as exc:
                raise TransportUnavailableError("NATS backend is unavailable") from exc

            async def nats_cleanup() -> None:
                with contextlib.suppress(Exception):
                    await nats_subscription.unsubscribe()
                if nats_state in self._nats_states:
                    self._nats_states.remove(nats_state)
                realtime_subscriptions.labels(topic_label(topic), "nats").dec()

            wrapper = Subscription(channel, nats_cleanup, None)
            nats_state.subscription = wrapper
            self._nats_states.append(nats_state)
            realtime_subscriptions.labels(topic_label(topic), "nats").inc()
            return wrapper

        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    async def _subscribe_redis(self, state: _ReaderState) -> None:
        if self._redis is None:
            try:
                await self._connect_redis()
            except _REDIS_ERRORS + (OSError,) as exc:
                raise TransportUnavailableError("Redis backend is unavailable") from exc
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        self._redis_states.append(state)
        try:
            await self._attach_redis_reader(state)
        except Exception as exc:
            state.active = False
            await self._pause_reader(state)
            self._redis_states.remove(state)
            if state.on_interrupted is None:
                self._trigger_redis_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis backend is unavailable") from exc

    def _subscribe_local(self, state: _ReaderState) -> None:
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        state.queue = queue
        self._local.attach(state.channel, queue)
        self._local_states.append(state)

        async def reader() -> None:
            while True:
                raw = await queue.get()
                if raw is None:
                    break
                payload = _decode(raw, state.channel)
                if payload is not None:
                    await self._dispatch(state, payload)

