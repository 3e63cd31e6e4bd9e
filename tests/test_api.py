import asyncio

import httpx
import pytest

from dashsync.api import ApiClient, AuthTokens, TokenRefresher
from dashsync.errors import ApiError, AuthExpiredError

BASE_URL = "http://testserver/api"


class FakeBackend:
    """Accepts only ``Bearer <valid_token>``; ``/auth/refresh`` issues it."""

    def __init__(
        self,
        *,
        valid_token: str = "new",
        refresh_status: int = 200,
        issued_token: str | None = None,
    ) -> None:
        self.valid_token = valid_token
        self.issued_token = issued_token or valid_token
        self.refresh_status = refresh_status
        self.refresh_calls = 0
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/auth/refresh":
            self.refresh_calls += 1
            for _ in range(3):
                await asyncio.sleep(0)
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"error": "invalid refresh token"})
            return httpx.Response(
                200,
                json={"success": True, "data": {"accessToken": self.issued_token, "refreshToken": "r2"}},
            )

        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return httpx.Response(401, json={"message": "Unauthorized"})
        return httpx.Response(200, json={"success": True, "data": {"path": request.url.path}})

    def auth_headers_for(self, path: str) -> list[str | None]:
        return [r.headers.get("Authorization") for r in self.requests if r.url.path == path]


def _api(handler, **kwargs) -> ApiClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    tokens = kwargs.pop("tokens", AuthTokens("old", "r1"))
    return ApiClient(BASE_URL, tokens, http_client=http_client, **kwargs)


async def _no_sleep(delay: float) -> None:
    return None


@pytest.mark.asyncio
async def test_concurrent_401s_trigger_exactly_one_refresh() -> None:
    backend = FakeBackend()
    api = _api(backend)
    new_tokens: list[str] = []
    api.add_token_listener(new_tokens.append)

    first, second = await asyncio.gather(api.get("/usage"), api.get("/costs"))

    assert first == {"path": "/api/usage"}
    assert second == {"path": "/api/costs"}
    assert backend.refresh_calls == 1
    assert backend.auth_headers_for("/api/usage")[-1] == "Bearer new"
    assert backend.auth_headers_for("/api/costs")[-1] == "Bearer new"
    assert api.tokens == AuthTokens("new", "r2")
    assert new_tokens == ["new"]
    assert not api.refresher.in_flight


@pytest.mark.asyncio
async def test_failed_refresh_logs_out_once_and_surfaces_to_all_callers() -> None:
    backend = FakeBackend(refresh_status=401)
    logouts: list[bool] = []
    api = _api(backend, on_logout=lambda: logouts.append(True))

    results = await asyncio.gather(
        api.get("/usage"),
        api.get("/costs"),
        return_exceptions=True,
    )

    assert all(isinstance(result, AuthExpiredError) for result in results)
    assert backend.refresh_calls == 1
    assert logouts == [True]
    assert api.tokens == AuthTokens("", "")


@pytest.mark.asyncio
async def test_rejected_replays_log_out_once() -> None:
    backend = FakeBackend(issued_token="revoked")
    logouts: list[bool] = []
    api = _api(backend, on_logout=lambda: logouts.append(True))

    results = await asyncio.gather(
        api.get("/usage"),
        api.get("/costs"),
        return_exceptions=True,
    )

    assert all(isinstance(result, AuthExpiredError) for result in results)
    assert backend.refresh_calls == 1
    assert backend.auth_headers_for("/api/usage")[-1] == "Bearer revoked"
    assert backend.auth_headers_for("/api/costs")[-1] == "Bearer revoked"
    assert logouts == [True]
    assert api.tokens == AuthTokens("", "")


@pytest.mark.asyncio
async def test_401_on_auth_endpoints_does_not_refresh() -> None:
    backend = FakeBackend()
    api = _api(backend)

    with pytest.raises(ApiError) as excinfo:
        await api.post("/auth/login", json={"email": "a@b.c"})

    assert excinfo.value.status_code == 401
    assert str(excinfo.value) == "Unauthorized (status=401)"
    assert backend.refresh_calls == 0


@pytest.mark.asyncio
async def test_get_is_retried_but_post_is_not() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        if len(calls) == 1 or request.method == "POST":
            return httpx.Response(503, json={"error": {"message": "busy"}})
        return httpx.Response(200, json={"ok": True})

    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    api = _api(handler, tokens=AuthTokens("new", "r1"), sleep=sleep)

    assert await api.get("/dashboard/summary") == {"ok": True}
    assert delays == [0.5]

    with pytest.raises(ApiError) as excinfo:
        await api.post("/notebooks/nb1/execute")
    assert excinfo.value.status_code == 503
    assert excinfo.value.message == "busy"
    assert calls == ["GET", "GET", "POST"]


@pytest.mark.asyncio
async def test_transport_error_on_get_exhausts_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api = _api(handler, max_retries=2, sleep=_no_sleep)

    with pytest.raises(ApiError, match="Request failed"):
        await api.get("/cache/stats")


@pytest.mark.asyncio
async def test_empty_response_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    api = _api(handler)

    assert await api.delete("/cache/clear") is None


@pytest.mark.asyncio
async def test_token_refresher_settles_once_then_goes_idle() -> None:
    calls = 0
    gate = asyncio.Event()

    async def refresh() -> str:
        nonlocal calls
        calls += 1
        await gate.wait()
        return f"token-{calls}"

    refresher = TokenRefresher(refresh)
    waiters = [asyncio.ensure_future(refresher.refresh()) for _ in range(3)]
    await asyncio.sleep(0)
    assert refresher.in_flight

    gate.set()
    assert await asyncio.gather(*waiters) == ["token-1", "token-1", "token-1"]
    assert not refresher.in_flight

    assert await refresher.refresh() == "token-2"
    assert refresher.refresh_count == 2


@pytest.mark.asyncio
async def test_cancelled_starter_does_not_cancel_refresh_for_other_waiters() -> None:
    gate = asyncio.Event()

    async def refresh() -> str:
        await gate.wait()
        return "tok"

    refresher = TokenRefresher(refresh)
    starter = asyncio.ensure_future(refresher.refresh())
    waiter = asyncio.ensure_future(refresher.refresh())
    await asyncio.sleep(0)
    starter.cancel()
    await asyncio.sleep(0)
    gate.set()

    assert await waiter == "tok"
    with pytest.raises(asyncio.CancelledError):
        await starter
    assert refresher.refresh_count == 1
    assert not refresher.in_flight


@pytest.mark.asyncio
async def test_token_refresher_shares_errors_then_goes_idle() -> None:
    async def refresh() -> str:
        await asyncio.sleep(0)
        raise AuthExpiredError("Token refresh rejected", status_code=401)

    refresher = TokenRefresher(refresh)

    results = await asyncio.gather(refresher.refresh(), refresher.refresh(), return_exceptions=True)

    assert all(isinstance(result, AuthExpiredError) for result in results)
    assert refresher.refresh_count == 1
    assert not refresher.in_flight
