from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from app.config import settings


def create_access_token(
    *, user_id: str, organization_id: Optional[str] = None, email: str = "", exp_hours: Optional[int] = None
) -> str:
    now = datetime.now(timezone.utc)
    hours = int(exp_hours if exp_hours is not None else settings.jwt_exp_hours)

    payload = {
        "sub": user_id,
        "org_id": organization_id,
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=hours)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
