import redis

from app.services import run_lock as run_lock_module
from app.services.run_lock import (
    InMemoryRunLock,
    RedisRunLock,
    get_match_run_lock,
    run_lock_key,
)


class _FakeScript:
    def __init__(self, store: dict) -> None:
        self._store = store

    def __call__(self, keys, args):
        if self._store.get(keys[0]) == args[0]:
            del self._store[keys[0]]
            return 1
        return 0


class _FakeRedis:
    def __init__(self) -> None:
        self.store: dict = {}
        self.set_calls: list = []

    def set(self, key, value, nx=False, ex=None):
        self.set_calls.append((key, nx, ex))
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def register_script(self, script):
        return _FakeScript(self.store)


def test_lock_key_is_scoped_per_patient() -> None:
    assert run_lock_key("patient-1") == "match-run:patient-1"


def test_in_memory_lock_is_single_flight() -> None:
    lock = InMemoryRunLock()
    lease = lock.try_acquire(key="match-run:p1", ttl_seconds=60)

    assert lease is not None
    assert lock.try_acquire(key="match-run:p1", ttl_seconds=60) is None
    assert lock.try_acquire(key="match-run:p2", ttl_seconds=60) is not None

    lock.release(lease)
    assert lock.try_acquire(key="match-run:p1", ttl_seconds=60) is not None


def test_in_memory_lock_expires(monkeypatch) -> None:
    now = {"value": 1000.0}
    monkeypatch.setattr(run_lock_module.time, "time", lambda: now["value"])
    lock = InMemoryRunLock()

    stale = lock.try_acquire(key="match-run:p1", ttl_seconds=10)
    now["value"] += 11
    fresh = lock.try_acquire(key="match-run:p1", ttl_seconds=10)

    assert fresh is not None
    # Releasing the expired lease must not free the newer holder.
    lock.release(stale)
    assert lock.try_acquire(key="match-run:p1", ttl_seconds=10) is None


def test_redis_lock_uses_set_nx_and_token_release() -> None:
    client = _FakeRedis()
    lock = RedisRunLock(client)

    lease = lock.try_acquire(key="match-run:p1", ttl_seconds=600)
    assert lease is not None
    assert lease.backend == "redis"
    assert client.set_calls[0] == ("match-run:p1", True, 600)
    assert lock.try_acquire(key="match-run:p1", ttl_seconds=600) is None

    lock.release(lease)
    assert "match-run:p1" not in client.store


def test_get_lock_falls_back_to_memory_without_redis(monkeypatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    assert isinstance(get_match_run_lock(), InMemoryRunLock)


def test_get_lock_falls_back_when_redis_unreachable(monkeypatch) -> None:
    class _DownRedis:
        def ping(self):
            raise redis.ConnectionError("down")

    monkeypatch.setenv("REDIS_URL", "redis://localhost:6399/0")
    monkeypatch.setattr(
        run_lock_module.redis.Redis, "from_url", lambda url, **kwargs: _DownRedis()
    )

    assert isinstance(get_match_run_lock(), InMemoryRunLock)
