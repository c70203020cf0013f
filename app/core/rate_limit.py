# app/core/rate_limit.py
import hashlib

from slowapi import Limiter
from slowapi.util import get_remote_address


def _client_key(request) -> str:
    # remote address + a digest of the caller's credentials, so users behind one NAT
    # do not share a bucket
    token = request.cookies.get("access_token") or request.headers.get("authorization") or "anon"
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
    return f"{get_remote_address(request)}:{digest}"


# one shared Limiter for the whole app
limiter = Limiter(key_func=_client_key)
