"""Call state persistence with per-call locking and expiry.

Every conversational turn and lifecycle webhook arrives as its own HTTP
request, so the only continuity a call has lives here.  Handlers follow
acquire -> read -> mutate -> save -> release under ``locked(call_id)``.
Locks carry their own TTL, so a crashed holder never blocks a call for
longer than ``lock_ttl_ms``; waiting for a busy lock is bounded by
``lock_wait_s`` and surfaces as ``LockTimeout``.

Two backends share the protocol: an in-memory one for development and tests,
and Redis for anything with more than one worker process.
"""

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from quotecall.errors import StoreUnavailable, LockTimeout
from quotecall.session import CallState
from quotecall.states import CallStatus

logger = logging.getLogger(__name__)

STATE_PREFIX = "voip:call:"
INDEX_PREFIX = "voip:quote-calls:"
LOCK_PREFIX = "voip:lock:"
ENDED_PREFIX = "voip:ended:"

DEFAULT_TTL_S = 3600
DEFAULT_LOCK_TTL_MS = 15000
DEFAULT_LOCK_WAIT_S = 2.0

# Identity and context fields a late initializer may fill in on an existing state
MERGEABLE_FIELDS = (
    "external_call_id", "quote_request_id", "supplier_id", "organization_id",
    "caller_id", "supplier_name", "supplier_phone", "caller_name",
)


def merge_metadata(existing: CallState, incoming: CallState) -> bool:
    """Copy non-empty metadata from ``incoming`` into empty slots of ``existing``."""
    changed = False
    for name in MERGEABLE_FIELDS:
        if not getattr(existing, name) and getattr(incoming, name):
            setattr(existing, name, getattr(incoming, name))
            changed = True
    if not existing.parts and incoming.parts:
        existing.parts = incoming.parts
        changed = True
    return changed


class StateStore(ABC):
    def __init__(
        self,
        *,
        ttl_s: int = DEFAULT_TTL_S,
        lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        lock_wait_s: float = DEFAULT_LOCK_WAIT_S,
        retry_interval_s: float = 0.1,
    ):
        self.ttl_s = ttl_s
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_wait_s = lock_wait_s
        self.retry_interval_s = retry_interval_s

    # ── Backend primitives ──

    @abstractmethod
    async def _load(self, call_id: str) -> str | None: ...

    @abstractmethod
    async def _store(self, call_id: str, payload: str, quote_request_id: str) -> None: ...

    @abstractmethod
    async def _remove(self, call_id: str, quote_request_id: str) -> bool: ...

    @abstractmethod
    async def _try_lock(self, call_id: str, token: str) -> bool: ...

    @abstractmethod
    async def _unlock(self, call_id: str, token: str) -> None: ...

    @abstractmethod
    async def _mark_ended(self, call_id: str) -> None: ...

    @abstractmethod
    async def _is_ended(self, call_id: str) -> bool: ...

    @abstractmethod
    async def _index_members(self, quote_request_id: str) -> list[str]: ...

    @abstractmethod
    async def _index_discard(self, quote_request_id: str, call_ids: list[str]) -> None: ...

    # ── Public API ──

    async def get(self, call_id: str) -> CallState | None:
        raw = await self._load(call_id)
        if raw is None:
            return None
        return CallState.from_dict(json.loads(raw))

    async def save(self, state: CallState) -> bool:
        """Persist and refresh the TTL. Returns False once the call has been cleaned up."""
        if await self._is_ended(state.call_id):
            logger.warning("[%s] not saving state for a call that already ended", state.call_id)
            return False
        await self._store(state.call_id, json.dumps(state.to_dict()), state.quote_request_id)
        return True

    async def delete(self, call_id: str) -> bool:
        """Remove the state and tombstone the id.

        Returns True only for the caller that actually removed a record, so
        cleanup side effects run exactly once.
        """
        state = await self.get(call_id)
        quote_request_id = state.quote_request_id if state else ""
        await self._mark_ended(call_id)
        removed = await self._remove(call_id, quote_request_id)
        if removed:
            logger.info("[%s] call state deleted", call_id)
        return removed

    async def is_ended(self, call_id: str) -> bool:
        return await self._is_ended(call_id)

    @asynccontextmanager
    async def locked(self, call_id: str, wait_s: float | None = None):
        """Hold the per-call lock for the duration of the block."""
        token = uuid.uuid4().hex
        wait = self.lock_wait_s if wait_s is None else wait_s
        deadline = time.monotonic() + wait
        attempts = 0
        while True:
            attempts += 1
            if await self._try_lock(call_id, token):
                break
            if time.monotonic() >= deadline:
                logger.warning("[%s] lock busy after %d attempts", call_id, attempts)
                raise LockTimeout(f"lock for call {call_id} busy")
            await asyncio.sleep(self.retry_interval_s)
        try:
            yield
        finally:
            await self._unlock(call_id, token)

    async def init_if_absent(self, state: CallState) -> tuple[CallState | None, bool]:
        """Persist ``state`` unless one already exists for its call id.

        Returns ``(state, created)``.  When a state exists only its empty
        metadata is filled in, so whichever of the lifecycle webhook and the
        first bridge turn loses the race never re-initializes the call.
        Returns ``(None, False)`` for a call that has already been cleaned up.
        """
        async with self.locked(state.call_id):
            if await self._is_ended(state.call_id):
                logger.info("[%s] ignoring init for a call that already ended", state.call_id)
                return None, False
            existing = await self.get(state.call_id)
            if existing is not None:
                if merge_metadata(existing, state):
                    await self.save(existing)
                    logger.info("[%s] merged late metadata into existing state", state.call_id)
                return existing, False
            await self.save(state)
            logger.info("[%s] call state initialized at %s", state.call_id, state.current_node.value)
            return state, True

    async def active_calls(self, quote_request_id: str) -> list[CallState]:
        """In-progress calls for a quote request. Expired ids are pruned from the index."""
        active = []
        stale = []
        for call_id in await self._index_members(quote_request_id):
            state = await self.get(call_id)
            if state is None:
                stale.append(call_id)
            elif state.status == CallStatus.IN_PROGRESS:
                active.append(state)
        if stale:
            await self._index_discard(quote_request_id, stale)
        return active


class InMemoryStateStore(StateStore):
    """Single-process store. Expiry uses a monotonic clock checked on access."""

    def __init__(self, *, clock=time.monotonic, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock
        self._states: dict[str, tuple[str, float]] = {}
        self._locks: dict[str, tuple[str, float]] = {}
        self._ended: dict[str, float] = {}
        self._index: dict[str, set[str]] = {}
        self._mutex = asyncio.Lock()

    def _alive(self, expires_at: float) -> bool:
        return self._clock() < expires_at

    async def _load(self, call_id):
        entry = self._states.get(call_id)
        if entry is None:
            return None
        payload, expires_at = entry
        if not self._alive(expires_at):
            self._states.pop(call_id, None)
            return None
        return payload

    async def _store(self, call_id, payload, quote_request_id):
        self._states[call_id] = (payload, self._clock() + self.ttl_s)
        if quote_request_id:
            self._index.setdefault(quote_request_id, set()).add(call_id)

    async def _remove(self, call_id, quote_request_id):
        entry = self._states.pop(call_id, None)
        if quote_request_id:
            self._index.get(quote_request_id, set()).discard(call_id)
        return entry is not None and self._alive(entry[1])

    async def _try_lock(self, call_id, token):
        async with self._mutex:
            held = self._locks.get(call_id)
            if held is not None and self._alive(held[1]):
                return False
            self._locks[call_id] = (token, self._clock() + self.lock_ttl_ms / 1000)
            return True

    async def _unlock(self, call_id, token):
        async with self._mutex:
            held = self._locks.get(call_id)
            if held is not None and held[0] == token:
                del self._locks[call_id]

    async def _mark_ended(self, call_id):
        self._ended[call_id] = self._clock() + self.ttl_s

    async def _is_ended(self, call_id):
        expires_at = self._ended.get(call_id)
        if expires_at is None:
            return False
        if not self._alive(expires_at):
            del self._ended[call_id]
            return False
        return True

    async def _index_members(self, quote_request_id):
        return sorted(self._index.get(quote_request_id, set()))

    async def _index_discard(self, quote_request_id, call_ids):
        members = self._index.get(quote_request_id, set())
        for call_id in call_ids:
            members.discard(call_id)


# Delete the lock only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisStateStore(StateStore):
    """Redis backend: SET EX for state, SET NX PX for locks, a set per quote request."""

    def __init__(self, client: aioredis.Redis, **kwargs):
        super().__init__(**kwargs)
        self._redis = client

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStateStore":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    async def close(self):
        await self._redis.aclose()

    async def _load(self, call_id):
        try:
            return await self._redis.get(STATE_PREFIX + call_id)
        except RedisError as e:
            raise StoreUnavailable(f"redis get failed: {e}") from e

    async def _store(self, call_id, payload, quote_request_id):
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(STATE_PREFIX + call_id, payload, ex=self.ttl_s)
                if quote_request_id:
                    pipe.sadd(INDEX_PREFIX + quote_request_id, call_id)
                    pipe.expire(INDEX_PREFIX + quote_request_id, self.ttl_s)
                await pipe.execute()
        except RedisError as e:
            raise StoreUnavailable(f"redis save failed: {e}") from e

    async def _remove(self, call_id, quote_request_id):
        try:
            removed = await self._redis.delete(STATE_PREFIX + call_id)
            if quote_request_id:
                await self._redis.srem(INDEX_PREFIX + quote_request_id, call_id)
            return bool(removed)
        except RedisError as e:
            raise StoreUnavailable(f"redis delete failed: {e}") from e

    async def _try_lock(self, call_id, token):
        try:
            acquired = await self._redis.set(
                LOCK_PREFIX + call_id, token, nx=True, px=self.lock_ttl_ms,
            )
            return bool(acquired)
        except RedisError as e:
            raise StoreUnavailable(f"redis lock failed: {e}") from e

    async def _unlock(self, call_id, token):
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, LOCK_PREFIX + call_id, token)
        except RedisError as e:
            # The lock expires on its own; a failed release only delays the next handler
            logger.warning("[%s] lock release failed: %s", call_id, e)

    async def _mark_ended(self, call_id):
        try:
            await self._redis.set(ENDED_PREFIX + call_id, "1", ex=self.ttl_s)
        except RedisError as e:
            raise StoreUnavailable(f"redis tombstone failed: {e}") from e

    async def _is_ended(self, call_id):
        try:
            return bool(await self._redis.exists(ENDED_PREFIX + call_id))
        except RedisError as e:
            raise StoreUnavailable(f"redis exists failed: {e}") from e

    async def _index_members(self, quote_request_id):
        try:
            return sorted(await self._redis.smembers(INDEX_PREFIX + quote_request_id))
        except RedisError as e:
            raise StoreUnavailable(f"redis smembers failed: {e}") from e

    async def _index_discard(self, quote_request_id, call_ids):
        try:
            await self._redis.srem(INDEX_PREFIX + quote_request_id, *call_ids)
        except RedisError as e:
            logger.warning("Index cleanup for %s failed: %s", quote_request_id, e)


def create_state_store(settings) -> StateStore:
    """Redis when REDIS_URL is set, otherwise the in-memory store."""
    options = dict(
        ttl_s=settings.state_ttl_s,
        lock_ttl_ms=settings.lock_ttl_ms,
        lock_wait_s=settings.lock_wait_s,
    )
    if settings.redis_url:
        logger.info("Using Redis call state store")
        return RedisStateStore.from_url(settings.redis_url, **options)
    logger.warning("REDIS_URL not set, call state is process-local")
    return InMemoryStateStore(**options)
