import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.services.database import ensure_tables, get_engine
from app.services.errors import (
    MatchingError,
    MatchingInProgress,
    NoCandidates,
    PatientNotFound,
    PersistenceFailure,
    RegistryUnavailable,
    RunCancelled,
    RunTimedOut,
)
from app.services.match_store import SqlMatchStore
from app.services.matching_orchestrator import MODES, MatchOrchestrator, build_orchestrator
from app.services.models import ProgressEvent
from app.services.patient_store import SqlPatientStore
from app.services.trial_store import SqlTrialStore

router = APIRouter()

LOGGER = logging.getLogger(__name__)

_ORCHESTRATOR: Optional[MatchOrchestrator] = None

_STATUS_BY_CODE = {
    PatientNotFound.code: 404,
    MatchingInProgress.code: 409,
    RunCancelled.code: 409,
    RegistryUnavailable.code: 503,
    PersistenceFailure.code: 503,
    RunTimedOut.code: 504,
}

DISCONNECT_POLL_SECONDS = 0.5


def _get_engine() -> Engine:
    return get_engine()


def _get_orchestrator() -> MatchOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = build_orchestrator(_get_engine())
    return _ORCHESTRATOR


def _error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
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
    return JSONResponse(
        status_code=200,
        content={"ok": True, "data": data, "error": None},
    )


def _matching_error(exc: MatchingError) -> JSONResponse:
    return _error(exc.code, exc.message, _STATUS_BY_CODE.get(exc.code, 500), exc.details)


def _parse_patient_id(payload: Dict[str, Any]) -> str:
    patient_id = payload.get("patient_id")
    if not isinstance(patient_id, str) or not patient_id.strip():
        raise ValueError("patient_id is required")
    return patient_id.strip()


def format_sse(event: ProgressEvent) -> str:
    return f"event: {event.event}\ndata: {json.dumps(event.to_payload())}\n\n"


async def _watch_disconnect(
    request: Request, cancel_event: asyncio.Event, interval: float = DISCONNECT_POLL_SECONDS
) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            LOGGER.info("client disconnected; cancelling matching run")
            cancel_event.set()
            return
        await asyncio.sleep(interval)


@router.post("/api/matches")
async def run_matches(request: Request, payload: Dict[str, Any]):
    """Run a matching pass and return the ranked result once it is persisted."""
    try:
        patient_id = _parse_patient_id(payload)
    except ValueError as exc:
        return _error(
            "VALIDATION_ERROR", str(exc), 400, {"patient_id": payload.get("patient_id")}
        )

    mode = payload.get("mode", "batch")
    if mode not in MODES:
        return _error(
            "VALIDATION_ERROR",
            f"mode must be one of {', '.join(MODES)}",
            400,
            {"mode": mode},
        )

    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        orchestrator = _get_orchestrator()
        result = await orchestrator.run_matching(
            patient_id, mode=mode, cancel_event=cancel_event
        )
    except MatchingError as exc:
        return _matching_error(exc)
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)
    finally:
        watcher.cancel()

    data = result.to_dict()
    data["outcome"] = NoCandidates.code if result.no_candidates else "MATCHED"
    return _ok(data)


@router.post("/api/matches/stream")
async def stream_matches(payload: Dict[str, Any]):
    """Incremental run over server-sent events, one event per progress step."""
    try:
        patient_id = _parse_patient_id(payload)
    except ValueError as exc:
        return _error(
            "VALIDATION_ERROR", str(exc), 400, {"patient_id": payload.get("patient_id")}
        )

    try:
        orchestrator = _get_orchestrator()
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    async def event_source() -> AsyncIterator[str]:
        events = orchestrator.stream_matching(patient_id)
        try:
            async for event in events:
                yield format_sse(event)
        finally:
            # Client went away or stream finished; stops further dispatches.
            await events.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/api/matches/{patient_id}")
def list_matches(patient_id: str):
    try:
        engine = _get_engine()
        ensure_tables(engine)
        if SqlPatientStore(engine).get_profile(patient_id) is None:
            return _error(
                PatientNotFound.code,
                "patient profile not found",
                404,
                {"patient_id": patient_id},
            )
        matches = SqlMatchStore(engine).list_matches(patient_id)
        trial_store = SqlTrialStore(engine)
        items = []
        for match in matches:
            item = match.to_dict()
            trial = trial_store.get_trial(match.registry_id)
            item["trial"] = trial.to_dict() if trial else None
            items.append(item)
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    return _ok({"patient_id": patient_id, "matches": items, "total": len(items)})
