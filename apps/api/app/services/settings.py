import logging
import math
import os
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

# Headroom past the run deadline for the final replace and lock release.
LOCK_TTL_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class MatchingConfig:
    min_score: int = 40
    batch_concurrency: int = 5
    candidate_limit: int = 30
    expansion_threshold: int = 10
    batch_pause_seconds: float = 0.5
    incremental_pause_seconds: float = 0.3
    run_deadline_seconds: float = 300.0
    lock_ttl_seconds: int = 600
    scoring_max_retries: int = 3
    scoring_base_delay_seconds: float = 1.0
    registry_timeout_seconds: float = 10.0
    reasoning_timeout_seconds: float = 60.0
    results_base_url: str = "http://localhost:8000"

    def effective_lock_ttl(self) -> int:
        """Lock TTL that outlives the whole run, deadline plus persistence."""
        floor = math.ceil(max(self.run_deadline_seconds, 0.0)) + LOCK_TTL_MARGIN_SECONDS
        return max(self.lock_ttl_seconds, floor)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("invalid int env %s=%s; using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("invalid float env %s=%s; using %s", name, raw, default)
        return default


def load_matching_config() -> MatchingConfig:
    """Read deployment overrides; unset or invalid values keep the defaults."""
    defaults = MatchingConfig()
    min_score = _env_int("MATCH_MIN_SCORE", defaults.min_score)
    if min_score < 0 or min_score > 100:
        LOGGER.warning("MATCH_MIN_SCORE=%s out of range; using %s", min_score, defaults.min_score)
        min_score = defaults.min_score

    run_deadline_seconds = _env_float("MATCH_RUN_DEADLINE_SECONDS", defaults.run_deadline_seconds)
    if run_deadline_seconds <= 0:
        LOGGER.warning(
            "MATCH_RUN_DEADLINE_SECONDS=%s must be positive; using %s",
            run_deadline_seconds,
            defaults.run_deadline_seconds,
        )
        run_deadline_seconds = defaults.run_deadline_seconds

    lock_ttl_seconds = max(1, _env_int("MATCH_LOCK_TTL_SECONDS", defaults.lock_ttl_seconds))
    lock_ttl_floor = math.ceil(run_deadline_seconds) + LOCK_TTL_MARGIN_SECONDS
    if lock_ttl_seconds < lock_ttl_floor:
        LOGGER.warning(
            "MATCH_LOCK_TTL_SECONDS=%s would expire before a run ends; using %s",
            lock_ttl_seconds,
            lock_ttl_floor,
        )
        lock_ttl_seconds = lock_ttl_floor

    return MatchingConfig(
        min_score=min_score,
        batch_concurrency=max(1, _env_int("MATCH_BATCH_CONCURRENCY", defaults.batch_concurrency)),
        candidate_limit=max(1, _env_int("MATCH_CANDIDATE_LIMIT", defaults.candidate_limit)),
        expansion_threshold=max(
            0, _env_int("MATCH_EXPANSION_THRESHOLD", defaults.expansion_threshold)
        ),
        batch_pause_seconds=max(
            0.0, _env_float("MATCH_BATCH_PAUSE_SECONDS", defaults.batch_pause_seconds)
        ),
        incremental_pause_seconds=max(
            0.0,
            _env_float("MATCH_INCREMENTAL_PAUSE_SECONDS", defaults.incremental_pause_seconds),
        ),
        run_deadline_seconds=run_deadline_seconds,
        lock_ttl_seconds=lock_ttl_seconds,
        scoring_max_retries=max(0, _env_int("SCORING_MAX_RETRIES", defaults.scoring_max_retries)),
        scoring_base_delay_seconds=max(
            0.0, _env_float("SCORING_BASE_DELAY_SECONDS", defaults.scoring_base_delay_seconds)
        ),
        registry_timeout_seconds=_env_float(
            "CTGOV_TIMEOUT_SECONDS", defaults.registry_timeout_seconds
        ),
        reasoning_timeout_seconds=_env_float(
            "OPENAI_TIMEOUT_SECONDS", defaults.reasoning_timeout_seconds
        ),
        results_base_url=os.getenv("RESULTS_BASE_URL", defaults.results_base_url).rstrip("/"),
    )
