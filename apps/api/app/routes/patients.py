import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.services.condition_parser import ConditionParser
from app.services.database import ensure_tables, get_engine
from app.services.errors import ReasoningServiceUnavailable
from app.services.patient_store import (
    SqlPatientStore,
    serialize_patient,
    validate_profile_json,
)
from app.services.scoring_engine import BackoffPolicy, ReasoningClient
from app.services.settings import load_matching_config

router = APIRouter()

LOGGER = logging.getLogger(__name__)


def _get_engine() -> Engine:
    return get_engine()


def _get_condition_parser() -> ConditionParser:
    config = load_matching_config()
    return ConditionParser(
        ReasoningClient(timeout_seconds=config.reasoning_timeout_seconds),
        policy=BackoffPolicy(
            max_retries=config.scoring_max_retries,
            base_delay_seconds=config.scoring_base_delay_seconds,
        ),
    )


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


@router.post("/api/patients")
def create_patient(payload: Dict[str, Any]):
    """Create a profile, or replace it when `id` names an existing one."""
    profile_json = payload.get("profile_json")
    source = payload.get("source", "manual")
    patient_id = payload.get("id")

    try:
        validate_profile_json(profile_json)
        if not isinstance(source, str) or not source.strip():
            raise ValueError("source must be a non-empty string")
        if patient_id is not None and (
            not isinstance(patient_id, str) or not patient_id.strip()
        ):
            raise ValueError("id must be a non-empty string")
    except (ValueError, TypeError) as exc:
        return _error(
            "VALIDATION_ERROR",
            str(exc),
            400,
            {
                "fields": [
                    "profile_json.demographics.age",
                    "profile_json.demographics.sex",
                ]
            },
        )

    try:
        engine = _get_engine()
        ensure_tables(engine)
        patient = SqlPatientStore(engine).upsert_patient(
            profile_json,
            patient_id=patient_id.strip() if patient_id else None,
            source=source.strip(),
        )
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    return _ok(patient)


@router.post("/api/patients/parse-conditions")
async def parse_conditions(payload: Dict[str, Any]):
    """Extract condition names from free text, optionally saving them on a profile."""
    description = payload.get("description")
    patient_id = payload.get("patient_id")
    if not isinstance(description, str) or not description.strip():
        return _error(
            "VALIDATION_ERROR", "description is required", 400, {"fields": ["description"]}
        )
    if patient_id is not None and (not isinstance(patient_id, str) or not patient_id.strip()):
        return _error(
            "VALIDATION_ERROR",
            "patient_id must be a non-empty string",
            400,
            {"fields": ["patient_id"]},
        )

    store = None
    if patient_id is not None:
        patient_id = patient_id.strip()
        try:
            engine = _get_engine()
            ensure_tables(engine)
            store = SqlPatientStore(engine)
            row = await asyncio.to_thread(store.get_profile, patient_id)
        except (SQLAlchemyError, RuntimeError) as exc:
            return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)
        if row is None:
            return _error(
                "PATIENT_NOT_FOUND", "patient profile not found", 404, {"id": patient_id}
            )

    try:
        conditions = await _get_condition_parser().parse(description.strip())
    except ReasoningServiceUnavailable as exc:
        LOGGER.error("condition parsing failed: %s", exc.message)
        return _error(exc.code, exc.message, 503, exc.details)

    data: Dict[str, Any] = {"conditions": conditions}
    if store is not None:
        try:
            patient = await asyncio.to_thread(
                store.set_ai_parsed_conditions, patient_id, conditions, description.strip()
            )
        except (SQLAlchemyError, RuntimeError) as exc:
            return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)
        if patient is None:
            return _error(
                "PATIENT_NOT_FOUND", "patient profile not found", 404, {"id": patient_id}
            )
        data["patient"] = patient
    return _ok(data)


@router.get("/api/patients/{patient_id}")
def get_patient(patient_id: str):
    try:
        engine = _get_engine()
        ensure_tables(engine)
        row = SqlPatientStore(engine).get_profile(patient_id)
    except (SQLAlchemyError, RuntimeError) as exc:
        return _error("EXTERNAL_API_ERROR", f"Database unavailable: {exc}", 503)

    if not row:
        return _error(
            "PATIENT_NOT_FOUND",
            "patient profile not found",
            404,
            {"id": patient_id},
        )

    return _ok(serialize_patient(row))
