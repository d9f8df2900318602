import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.services.ctgov_client import CTGovClient, extract_trial_candidate
from app.services.database import ensure_tables, get_engine
from app.services.errors import RegistryUnavailable
from app.services.models import TrialCandidate
from app.services.query_planner import retrieve_candidates
from app.services.settings import load_matching_config
from app.services.trial_store import SqlTrialStore

router = APIRouter()

LOGGER = logging.getLogger(__name__)

_NCT_ID_PATTERN = re.compile(r"^NCT\d{8}$")


def _get_engine() -> Engine:
    return get_engine()


def _get_registry() -> CTGovClient:
    return CTGovClient(timeout_seconds=load_matching_config().registry_timeout_seconds)


def _error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
):
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "data": None,
            "error": {
                "code": code,
                "message": message,
                "details": details or {},
            },
        },
    )


def _ok(data: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=200, content={"ok": True, "data": data, "error": None})


def _parse_pagination(
    page_raw: Optional[str], page_size_raw: Optional[str]
) -> Tuple[int, int]:
    page = int(page_raw) if page_raw is not None else 1
    page_size = int(page_size_raw) if page_size_raw is not None else 20
    if page < 1 or page_size < 1 or page_size > 100:
        raise ValueError("page or page_size out of range")
    return page, page_size


def _parse_conditions(raw: Any) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError("conditions must be a list of strings")
    return [item.strip() for item in raw if item.strip()]


def _matches_condition(trial: TrialCandidate, condition: str) -> bool:
    needle = condition.lower()
    if needle in trial.title.lower():
        return True
    return any(needle in value.lower() for value in trial.conditions)


@router.post("/api/trials/ingest")
async def ingest_trials(payload: Optional[Dict[str, Any]] = None):
    """Fetch recruiting trials for the given conditions and cache them."""
    payload = payload or {}
    try:
        conditions = _parse_conditions(payload.get("conditions"))
    except ValueError as exc:
        return _error(
            "VALIDATION_ERROR", str(exc), 400, {"conditions": payload.get("conditions")}
        )

    config = load_matching_config()
    try:
        candidates = await retrieve_candidates(
            _get_registry(),
            conditions,
            page_size=config.candidate_limit,
            expansion_threshold=config.expansion_threshold,
        )
    except RegistryUnavailable as exc:
        return _error(exc.code, exc.message, 503, exc.details)

    try:
        engine = _get_engine()
        ensure_tables(engine)
        store = SqlTrialStore(engine)
        for candidate in candidates:
            store.upsert_trial(candidate)
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    return _ok(
        {
            "ingested": len(candidates),
            "nct_ids": [candidate.registry_id for candidate in candidates],
        }
    )


@router.get("/api/trials")
def list_trials(
    condition: Optional[str] = None,
    page: Optional[str] = None,
    page_size: Optional[str] = None,
):
    """Return cached trials, newest first, optionally filtered by condition."""
    try:
        page_num, page_size_num = _parse_pagination(page, page_size)
    except (ValueError, TypeError):
        return _error(
            "VALIDATION_ERROR",
            "page and page_size must be valid integers between 1 and 100",
            400,
            {"page": page, "page_size": page_size},
        )

    try:
        engine = _get_engine()
        ensure_tables(engine)
        trials = SqlTrialStore(engine).list_all_trials()
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    if condition and condition.strip():
        trials = [trial for trial in trials if _matches_condition(trial, condition.strip())]

    offset = (page_num - 1) * page_size_num
    return _ok(
        {
            "trials": [trial.to_dict() for trial in trials[offset : offset + page_size_num]],
            "total": len(trials),
            "page": page_num,
            "page_size": page_size_num,
        }
    )


@router.get("/api/trials/{nct_id}")
async def get_trial(nct_id: str):
    """Return trial details, fetching and caching the record on a cache miss."""
    if not _NCT_ID_PATTERN.match(nct_id):
        return _error(
            "VALIDATION_ERROR",
            "nct_id must look like NCT followed by 8 digits",
            400,
            {"nct_id": nct_id},
        )

    try:
        engine = _get_engine()
        ensure_tables(engine)
        store = SqlTrialStore(engine)
        trial = await asyncio.to_thread(store.get_trial, nct_id)
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    if trial:
        return _ok(trial.to_dict())

    try:
        study = await _get_registry().get_study(nct_id)
    except RegistryUnavailable as exc:
        if exc.details.get("status_code") == 404:
            return _error("TRIAL_NOT_FOUND", "trial not found", 404, {"nct_id": nct_id})
        return _error(exc.code, exc.message, 503, exc.details)

    try:
        trial = extract_trial_candidate(study)
    except ValueError as exc:
        LOGGER.warning("unusable registry record for %s: %s", nct_id, exc)
        return _error("TRIAL_NOT_FOUND", "trial not found", 404, {"nct_id": nct_id})

    try:
        await asyncio.to_thread(store.upsert_trial, trial)
    except SQLAlchemyError as exc:
        LOGGER.warning("failed to cache trial %s: %s", nct_id, exc)

    return _ok(trial.to_dict())


@router.delete("/api/trials")
def delete_trials():
    try:
        engine = _get_engine()
        ensure_tables(engine)
        deleted = SqlTrialStore(engine).delete_all_trials()
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    return _ok({"deleted": deleted})
