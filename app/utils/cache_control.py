# app/utils/cache_control.py

from functools import wraps
from typing import Optional

from fastapi import Response
from fastapi.responses import JSONResponse

NO_CACHE = "no-cache, no-store, must-revalidate"


def cache_control(value: str, *, pragma: Optional[str] = None):
    """
    Decorator that adds Cache-Control (and optionally Pragma) to the
    responses of an async endpoint.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            result = await func(*args, **kwargs)
            headers = {"Cache-Control": value}
            if pragma:
                headers["Pragma"] = pragma

            # the route already built a Response (JSON, stream, ...)
            if isinstance(result, Response):
                for key, header in headers.items():
                    result.headers.setdefault(key, header)
                return result

            return JSONResponse(content=result, headers=headers)

        return wrapper

    return decorator


no_cache = cache_control(NO_CACHE, pragma="no-cache")
