"""Request-scoped caller identity.

Callers present an API token as ``Authorization: Bearer <token>``; the
sha256 of the token is matched against ``users.local_auth_hash``. Nothing is
kept between requests.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from lms_import.core.errors import AuthenticationError, PermissionDeniedError
from lms_import.db.session import get_session
from lms_import.models import User

IMPORT_ROLES = frozenset({"admin", "teacher"})


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    role: str
    display_name: str


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationError("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Expected a bearer token")
    return token.strip()


def get_request_context(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> RequestContext:
    token = _bearer_token(authorization)
    user = session.query(User).filter(User.local_auth_hash == hash_token(token)).one_or_none()
    if user is None:
        raise AuthenticationError("Invalid or expired token")
    return RequestContext(user_id=user.id, role=user.role, display_name=user.display_name)


def require_importer(context: RequestContext = Depends(get_request_context)) -> RequestContext:
    if context.role not in IMPORT_ROLES:
        raise PermissionDeniedError("Only admins and teachers can import course content")
    return context
