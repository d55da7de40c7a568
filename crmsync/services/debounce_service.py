"""
Debounce of rapid-fire text fragments.

Each sender has at most one episode: the first fragment arms a timer, every
further fragment rearms it, and when the timer fires the collected fragments are
drained and handed to the flush callback as one batch.
"""

import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis_async

from crmsync.logging_config import get_logger

logger = get_logger("debounce_service")

FlushCallback = Callable[[int, list["Fragment"]], Awaitable[None]]
ErrorCallback = Callable[[int, list["Fragment"], Exception], Awaitable[None]]


@dataclass
class Fragment:
    text: str
    channel_message_id: Optional[int] = None
    display_name: Optional[str] = None
    reply_to_channel_message_id: Optional[int] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "Fragment":
        data = json.loads(raw)
        return cls(
            text=data["text"],
            channel_message_id=data.get("channel_message_id"),
            display_name=data.get("display_name"),
            reply_to_channel_message_id=data.get("reply_to_channel_message_id"),
        )


def join_fragments(fragments: list[Fragment]) -> str:
    return "\n".join(fragment.text for fragment in fragments)


class DebounceStore:
    """Keyed storage of pending fragments. Drain must empty the key atomically."""

    async def append(self, key: int, fragment: Fragment) -> None:
        raise NotImplementedError

    async def drain(self, key: int) -> list[Fragment]:
        raise NotImplementedError


class InMemoryDebounceStore(DebounceStore):
    """Process-local store, bounded in keys and fragments, with a TTL per key."""

    def __init__(
        self,
        max_keys: int = 10_000,
        ttl_seconds: float = 300,
        max_fragments: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_keys = max_keys
        self.ttl_seconds = ttl_seconds
        self.max_fragments = max_fragments
        self._clock = clock
        self._entries: OrderedDict[int, tuple[float, list[Fragment]]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _expire(self) -> None:
        deadline = self._clock() - self.ttl_seconds
        while self._entries:
            key, (touched_at, _) = next(iter(self._entries.items()))
            if touched_at > deadline:
                break
            self._entries.popitem(last=False)
            logger.warning("Debounce entry expired undrained", extra={"context": {"external_user_id": key}})

    async def append(self, key: int, fragment: Fragment) -> None:
        self._expire()
        if key in self._entries:
            _, fragments = self._entries.pop(key)
        else:
            fragments = []
            if len(self._entries) >= self.max_keys:
                evicted, _ = self._entries.popitem(last=False)
                logger.warning("Debounce store full, evicting oldest entry", extra={"context": {"external_user_id": evicted}})
        fragments.append(fragment)
        self._entries[key] = (self._clock(), fragments[-self.max_fragments :])

    async def drain(self, key: int) -> list[Fragment]:
        self._expire()
        entry = self._entries.pop(key, None)
        return entry[1] if entry else []


class RedisDebounceStore(DebounceStore):
    """Shared store for several workers; timers stay per process, so routing must be sticky per sender."""

    def __init__(
        self,
        redis_client: redis_async.Redis,
        ttl_seconds: int = 300,
        max_fragments: int = 50,
        prefix: str = "crmsync:debounce",
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.max_fragments = max_fragments
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout_seconds: float = 2.0, **kwargs) -> "RedisDebounceStore":
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client, **kwargs)

    def _key(self, key: int) -> str:
        return f"{self.prefix}:{key}"

    async def append(self, key: int, fragment: Fragment) -> None:
        redis_key = self._key(key)
        await self.redis.rpush(redis_key, fragment.to_json())
        await self.redis.ltrim(redis_key, -self.max_fragments, -1)
        await self.redis.expire(redis_key, self.ttl_seconds)

    async def drain(self, key: int) -> list[Fragment]:
        async with self.redis.pipeline(transaction=True) as pipe:
            raw, _ = await pipe.lrange(self._key(key), 0, -1).delete(self._key(key)).execute()
        return [Fragment.from_json(item) for item in raw or []]


class DebounceBuffer:
    def __init__(
        self,
        on_flush: FlushCallback,
        store: Optional[DebounceStore] = None,
        window_seconds: float = 3.0,
        on_error: Optional[ErrorCallback] = None,
        sleep_func=asyncio.sleep,
    ):
        self.on_flush = on_flush
        self.store = store or InMemoryDebounceStore()
        self.window_seconds = window_seconds
        self.on_error = on_error
        self._sleep = sleep_func
        self._timers: dict[int, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()

    def pending_keys(self) -> list[int]:
        return list(self._timers)

    async def on_fragment(
        self,
        external_user_id: int,
        text: str,
        channel_message_id: Optional[int] = None,
        *,
        display_name: Optional[str] = None,
        reply_to_channel_message_id: Optional[int] = None,
    ) -> bool:
        """Buffer a fragment and (re)arm the sender's timer. Returns False for empty text."""
        if not text or not text.strip():
            return False

        fragment = Fragment(
            text=text,
            channel_message_id=channel_message_id,
            display_name=display_name,
            reply_to_channel_message_id=reply_to_channel_message_id,
        )
        await self.store.append(external_user_id, fragment)

        previous = self._timers.pop(external_user_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        self._timers[external_user_id] = asyncio.create_task(self._wait_and_flush(external_user_id))

        logger.debug(
            "Fragment buffered",
            extra={"context": {"external_user_id": external_user_id, "channel_message_id": channel_message_id}},
        )
        return True

    async def _wait_and_flush(self, key: int) -> None:
        try:
            await self._sleep(self.window_seconds)
        except asyncio.CancelledError:
            return

        # From here on the episode is flushing; a new fragment starts a new timer.
        task = asyncio.current_task()
        if self._timers.get(key) is task:
            del self._timers[key]
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        await self._flush(key)

    async def _flush(self, key: int) -> None:
        context = {"external_user_id": key}
        try:
            fragments = await self.store.drain(key)
        except Exception as e:
            logger.error("Debounce drain failed", extra={"context": {**context, "error": str(e)}}, exc_info=True)
            return

        if not fragments:
            return

        logger.info("Debounce flush", extra={"context": {**context, "fragments": len(fragments)}})
        try:
            await self.on_flush(key, fragments)
        except Exception as e:
            logger.error("Debounce flush failed", extra={"context": {**context, "error": str(e)}}, exc_info=True)
            if self.on_error is not None:
                try:
                    await self.on_error(key, fragments, e)
                except Exception as notify_error:
                    logger.warning(
                        "Debounce error handler failed",
                        extra={"context": {**context, "error": str(notify_error)}},
                    )

    async def flush_all(self) -> None:
        """Flush every pending episode now and wait for in-flight flushes."""
        keys = list(self._timers)
        for key in keys:
            self._timers.pop(key).cancel()
        await asyncio.gather(*(self._flush(key) for key in keys))
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
