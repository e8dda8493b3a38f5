from __future__ import annotations

import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError
from sqlalchemy.orm import Session

from shiftwatch.db import get_db
from shiftwatch.errors import ApiError, ForbiddenError, UnauthorizedError
from shiftwatch.services.session_versions import (
    PrincipalKind,
    SessionVersionGuard,
    get_session_version_guard,
)
from shiftwatch.settings import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

_LOCK = threading.Lock()
_FAILED_ATTEMPTS: dict[str, deque[datetime]] = defaultdict(deque)
_MAX_ATTEMPTS = 10
_ATTEMPT_WINDOW = timedelta(minutes=10)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _cleanup_attempts(ip: str, now: datetime) -> None:
    queue = _FAILED_ATTEMPTS[ip]
    threshold = now - _ATTEMPT_WINDOW
    while queue and queue[0] < threshold:
        queue.popleft()
    if not queue:
        _FAILED_ATTEMPTS.pop(ip, None)


def ensure_login_attempt_allowed(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        queue = _FAILED_ATTEMPTS.get(ip, deque())
        if len(queue) >= _MAX_ATTEMPTS:
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Too many failed login attempts. Please try again later.",
            )


def register_login_failure(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        _FAILED_ATTEMPTS[ip].append(now)


def register_login_success(ip: str) -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.pop(ip, None)


def reset_login_attempts() -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.clear()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        # Malformed stored hashes count as a failed login.
        return False


def _audience_for(kind: PrincipalKind) -> str:
    settings = get_settings()
    if PrincipalKind(kind) == PrincipalKind.ADMIN:
        return settings.jwt_admin_audience
    return settings.jwt_guard_audience


def _lifetime_minutes(kind: PrincipalKind) -> int:
    settings = get_settings()
    if PrincipalKind(kind) == PrincipalKind.ADMIN:
        return settings.admin_access_token_minutes
    return settings.guard_access_token_minutes


def create_access_token(
    *,
    kind: PrincipalKind,
    principal_id: int,
    token_version: int,
) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    lifetime_minutes = _lifetime_minutes(kind)
    claims = {
        "sub": str(principal_id),
        "role": PrincipalKind(kind).value,
        "tv": int(token_version),
        "iss": settings.jwt_issuer,
        "aud": _audience_for(kind),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=lifetime_minutes)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, lifetime_minutes * 60, claims


def decode_token(token: str, *, kind: PrincipalKind) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=_audience_for(kind),
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise UnauthorizedError(message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise UnauthorizedError(message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise UnauthorizedError(message="Token subject is invalid.")

    if not isinstance(payload.get("tv"), int):
        raise UnauthorizedError(message="Token version is missing.")

    if payload.get("role") != PrincipalKind(kind).value:
        raise ForbiddenError()

    return payload


def principal_id(claims: dict[str, Any]) -> int:
    return int(claims["sub"])


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError(message="Missing bearer token.")
    return credentials.credentials


def _authorize(
    request: Request,
    token: str,
    *,
    kind: PrincipalKind,
    db: Session,
    version_guard: SessionVersionGuard,
) -> dict[str, Any]:
    payload = decode_token(token, kind=kind)
    subject_id = principal_id(payload)
    if not version_guard.is_current(db, kind, subject_id, int(payload["tv"])):
        raise UnauthorizedError(code="SESSION_REVOKED", message="Session is no longer valid.")

    request.state.actor = PrincipalKind(kind).value
    request.state.actor_id = str(subject_id)
    return payload


def require_guard(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
) -> dict[str, Any]:
    return _authorize(
        request,
        _bearer_token(credentials),
        kind=PrincipalKind.GUARD,
        db=db,
        version_guard=version_guard,
    )


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
) -> dict[str, Any]:
    return _authorize(
        request,
        _bearer_token(credentials),
        kind=PrincipalKind.ADMIN,
        db=db,
        version_guard=version_guard,
    )


def _stream_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str:
    # EventSource cannot set headers, so streams also accept ?access_token=.
    if credentials is not None and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    query_token = (request.query_params.get("access_token") or "").strip()
    if not query_token:
        raise UnauthorizedError(message="Missing bearer token.")
    return query_token


def require_guard_stream(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
) -> dict[str, Any]:
    return _authorize(
        request,
        _stream_token(request, credentials),
        kind=PrincipalKind.GUARD,
        db=db,
        version_guard=version_guard,
    )


def require_admin_stream(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    version_guard: SessionVersionGuard = Depends(get_session_version_guard),
) -> dict[str, Any]:
    return _authorize(
        request,
        _stream_token(request, credentials),
        kind=PrincipalKind.ADMIN,
        db=db,
        version_guard=version_guard,
    )
