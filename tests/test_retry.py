import httpx
import pytest

from app.infra.retry import is_transient_http_error, retry_async


def _status_error(code):
    request = httpx.Request("GET", "https://provider.example")
    return httpx.HTTPStatusError("bad", request=request, response=httpx.Response(code, request=request))


def test_transient_classification():
    assert is_transient_http_error(httpx.ConnectTimeout("slow"))
    assert is_transient_http_error(_status_error(429))
    assert is_transient_http_error(_status_error(503))
    assert not is_transient_http_error(_status_error(404))
    assert not is_transient_http_error(ValueError("bad payload"))


@pytest.mark.anyio
async def test_retries_transient_then_succeeds():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _status_error(502)
        return "ok"

    retried = []
    result = await retry_async(flaky, base=0, on_retry=lambda n, exc, delay: retried.append(n))
    assert result == "ok"
    assert retried == [1, 2]


@pytest.mark.anyio
async def test_non_transient_errors_are_not_retried():
    calls = []

    async def broken():
        calls.append(1)
        raise _status_error(401)

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(broken, base=0)
    assert len(calls) == 1
