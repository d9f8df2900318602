import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import redis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def run_lock_key(patient_id: str) -> str:
    return f"match-run:{patient_id}"


@dataclass(frozen=True)
class RunLease:
    key: str
    token: str
    backend: str


class RunLock:
    def try_acquire(self, *, key: str, ttl_seconds: int) -> Optional[RunLease]:
        raise NotImplementedError

    def release(self, lease: RunLease) -> None:
        raise NotImplementedError


class InMemoryRunLock(RunLock):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # key -> (token, expires_at_epoch)
        self._held: dict[str, tuple[str, float]] = {}

    def try_acquire(self, *, key: str, ttl_seconds: int) -> Optional[RunLease]:
        now = time.time()
        with self._lock:
            held = self._held.get(key)
            if held is not None and held[1] > now:
                return None
            token = uuid.uuid4().hex
            self._held[key] = (token, now + ttl_seconds)
        return RunLease(key=key, token=token, backend="memory")

    def release(self, lease: RunLease) -> None:
        with self._lock:
            held = self._held.get(lease.key)
            if held is not None and held[0] == lease.token:
                del self._held[lease.key]


class RedisRunLock(RunLock):
    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._release = client.register_script(_RELEASE_SCRIPT)

    def try_acquire(self, *, key: str, ttl_seconds: int) -> Optional[RunLease]:
        token = uuid.uuid4().hex
        acquired = self._client.set(key, token, nx=True, ex=max(1, int(ttl_seconds)))
        if not acquired:
            return None
        return RunLease(key=key, token=token, backend="redis")

    def release(self, lease: RunLease) -> None:
        # Only the holder's token may delete; an expired lease may belong to a newer run.
        self._release(keys=[lease.key], args=[lease.token])


_RUN_LOCK: RunLock | None = None


def get_match_run_lock() -> RunLock:
    """Process-wide lock for matching runs.

    - Uses Redis when REDIS_URL is configured and reachable.
    - Falls back to an in-memory lock otherwise.
    """

    global _RUN_LOCK
    if _RUN_LOCK is not None:
        return _RUN_LOCK

    redis_url = os.getenv("REDIS_URL", "").strip()
    if not redis_url:
        _RUN_LOCK = InMemoryRunLock()
        return _RUN_LOCK

    try:
        client = redis.Redis.from_url(
            redis_url,
            socket_connect_timeout=0.2,
            socket_timeout=0.2,
        )
        client.ping()
        _RUN_LOCK = RedisRunLock(client)
    except redis.RedisError:
        _RUN_LOCK = InMemoryRunLock()
    return _RUN_LOCK


def reset_match_run_lock() -> None:
    global _RUN_LOCK
    _RUN_LOCK = None
