import os
from typing import Any, Dict, Tuple

import psycopg
import redis
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.services.database import normalize_db_url

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"ok": True, "service": "trial-match"}


def _check_postgres() -> Tuple[bool, str | None]:
    dsn = os.getenv("DATABASE_URL")
    if not dsn:
        return False, "DATABASE_URL not set"
    # psycopg takes the plain libpq DSN, not the SQLAlchemy driver URL.
    dsn = normalize_db_url(dsn).replace("postgresql+psycopg://", "postgresql://", 1)
    try:
        with psycopg.connect(dsn, connect_timeout=2) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        return True, None
    except psycopg.Error as exc:
        return False, str(exc)


def _check_redis() -> Tuple[bool, str | None, str]:
    url = os.getenv("REDIS_URL")
    if not url:
        # Runs fall back to the in-process lock.
        return True, None, "memory"
    try:
        client = redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2)
        client.ping()
        return True, None, "redis"
    except redis.RedisError as exc:
        return False, str(exc), "redis"


def _check_reasoning_config() -> Tuple[bool, str | None]:
    if not os.getenv("OPENAI_API_KEY"):
        return False, "OPENAI_API_KEY not set"
    return True, None


@router.get("/readyz")
def readyz() -> JSONResponse:
    db_ok, db_err = _check_postgres()
    redis_ok, redis_err, lock_backend = _check_redis()
    reasoning_ok, reasoning_err = _check_reasoning_config()

    checks: Dict[str, Dict[str, Any]] = {
        "db": {"ok": db_ok},
        "run_lock": {"ok": redis_ok, "backend": lock_backend},
        "reasoning": {"ok": reasoning_ok},
    }
    if db_err:
        checks["db"]["error"] = db_err
    if redis_err:
        checks["run_lock"]["error"] = redis_err
    if reasoning_err:
        checks["reasoning"]["error"] = reasoning_err

    ok = db_ok and redis_ok and reasoning_ok
    status_code = 200 if ok else 503
    return JSONResponse(status_code=status_code, content={"ok": ok, "checks": checks})
