from dataclasses import dataclass

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.auth.jwt import decode_token
from app.db import get_db
from app.models.tenant import OrganizationMember
from app.models.user import User

logger = structlog.get_logger("prophet.auth")

security = HTTPBearer(auto_error=False)  # handlers decide between 401 and an empty list

JOB_ROLES = ("owner", "admin")


@dataclass(frozen=True)
class JobAuthContext:
    user_id: str
    organization_id: str
    role: str


def _extract_token(
    request: Request, creds: HTTPAuthorizationCredentials | None
) -> str | None:
    # 1) cookie
    cookie_token = request.cookies.get("access_token")
    if cookie_token:
        return cookie_token

    # 2) Authorization header
    if creds and creds.credentials:
        return creds.credentials

    return None


def resolve_job_auth(db: Session, token: str | None) -> JobAuthContext | None:
    """User -> current organization -> owner/admin membership, else None."""
    if not token:
        return None
    try:
        payload = decode_token(token)
    except jwt.PyJWTError:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None

    user = db.get(User, user_id)
    if not user or not user.is_active or not user.current_organization_id:
        return None

    member = (
        db.query(OrganizationMember)
        .filter(
            OrganizationMember.organization_id == user.current_organization_id,
            OrganizationMember.user_id == user.id,
        )
        .first()
    )
    if not member or member.role not in JOB_ROLES:
        return None
    return JobAuthContext(user_id=user.id, organization_id=member.organization_id, role=member.role)


def get_job_auth_context(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> JobAuthContext | None:
    token = _extract_token(request, creds)
    try:
        return resolve_job_auth(db, token)
    except SQLAlchemyError as exc:
        logger.warning("auth_lookup_failed", error=str(exc))
        return None
