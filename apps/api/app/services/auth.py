import datetime as dt
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import jwt
from jwt import InvalidTokenError

DEFAULT_ALGORITHM = "HS256"
DEFAULT_JWT_SECRET = "dev-secret-change-me-please-use-32bytes"
DEFAULT_LEEWAY_SECONDS = 30

# Roles allowed to change the shared trial cache.
TRIAL_ADMIN_ROLES = frozenset({"admin", "operator"})


class AuthError(Exception):
    """Raised when bearer token auth fails."""


class PermissionDenied(AuthError):
    """Raised when a valid token lacks the role an operation needs."""


@dataclass(frozen=True)
class AuthSettings:
    secret: str
    algorithm: str
    leeway_seconds: int


def load_auth_settings() -> AuthSettings:
    raw_leeway = os.getenv("JWT_LEEWAY_SECONDS")
    try:
        leeway = int(raw_leeway) if raw_leeway is not None else DEFAULT_LEEWAY_SECONDS
    except ValueError:
        leeway = DEFAULT_LEEWAY_SECONDS
    return AuthSettings(
        secret=os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET),
        algorithm=os.getenv("JWT_ALGORITHM", DEFAULT_ALGORITHM),
        leeway_seconds=max(0, leeway),
    )


def create_access_token(
    *,
    sub: str,
    role: str = "user",
    expires_seconds: int = 3600,
) -> str:
    settings = load_auth_settings()
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(seconds=expires_seconds)).timestamp()),
    }
    return jwt.encode(payload, settings.secret, algorithm=settings.algorithm)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthError("Authorization header is required")

    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Authorization header must be Bearer token")

    token = parts[1].strip()
    if not token:
        raise AuthError("Bearer token is empty")
    return token


def decode_auth_header(authorization: Optional[str]) -> Dict[str, Any]:
    settings = load_auth_settings()
    token = _bearer_token(authorization)
    try:
        payload = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.algorithm],
            leeway=settings.leeway_seconds,
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError as exc:
        raise AuthError(f"Invalid token: {exc}") from exc

    if not isinstance(payload, dict):
        raise AuthError("Invalid token payload")
    if not isinstance(payload.get("sub"), str) or not payload["sub"].strip():
        raise AuthError("Token missing sub claim")
    return payload


def require_role(claims: Dict[str, Any], roles: Iterable[str]) -> None:
    allowed = set(roles)
    if claims.get("role") not in allowed:
        raise PermissionDenied(f"role must be one of {', '.join(sorted(allowed))}")
