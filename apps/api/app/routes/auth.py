import os

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.services.auth import create_access_token

router = APIRouter()

_MAX_SUBJECT_CHARS = 128
_DEFAULT_EXPIRES_SECONDS = 86400
_ALLOWED_PREVIEW_ROLES = ("preview", "user")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _error(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "data": None,
            "error": {
                "code": code,
                "message": message,
                "details": {},
            },
        },
    )


@router.get("/api/auth/preview-token")
def get_preview_token(sub: str | None = None) -> JSONResponse:
    """Issue a short-lived token for demo environments.

    Disabled unless MATCH_PREVIEW_TOKEN_ENABLED=1. Preview tokens never carry
    a role that can modify the trial cache.
    """
    if not _env_bool("MATCH_PREVIEW_TOKEN_ENABLED", False):
        return _error("NOT_FOUND", "not found", 404)

    expires_seconds = _env_int("MATCH_PREVIEW_TOKEN_EXPIRES_SECONDS", _DEFAULT_EXPIRES_SECONDS)
    if expires_seconds < 60 or expires_seconds > 60 * 60 * 24 * 30:
        expires_seconds = _DEFAULT_EXPIRES_SECONDS

    subject = (sub or "").strip() or os.getenv("MATCH_PREVIEW_TOKEN_SUB", "preview-user")
    if len(subject) > _MAX_SUBJECT_CHARS:
        return _error("VALIDATION_ERROR", "sub is too long", 400)

    role = os.getenv("MATCH_PREVIEW_TOKEN_ROLE", "preview")
    if role not in _ALLOWED_PREVIEW_ROLES:
        role = "preview"

    token = create_access_token(sub=subject, role=role, expires_seconds=expires_seconds)
    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "data": {
                "token": token,
                "sub": subject,
                "role": role,
                "expires_seconds": expires_seconds,
            },
            "error": None,
        },
    )
