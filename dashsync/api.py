"""Async REST client with bearer auth and single-flight token refresh."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from dashsync.config import (
    API_BASE_URL,
    AUTH_EXEMPT_ENDPOINTS,
    AUTH_REFRESH_ENDPOINT,
    MAX_RETRIES,
    REQUEST_TIMEOUT_SECONDS,
)
from dashsync.errors import ApiError, AuthExpiredError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

TokenListener = Callable[[str], None]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class AuthTokens:
    access_token: str = ""
    refresh_token: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def clear(self) -> None:
        self.access_token = ""
        self.refresh_token = ""


class TokenRefresher:
    """Run at most one token refresh at a time.

    Callers arriving while a refresh is in flight await the same task and
    receive the same token (or the same error). The refresh runs in its own
    task, so cancelling the caller that started it does not cancel it for
    the others. Once it settles the refresher is idle again.
    """

    def __init__(self, refresh: Callable[[], Awaitable[str]]) -> None:
        self._refresh = refresh
        self._pending: asyncio.Task[str] | None = None
        self.refresh_count = 0

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    async def refresh(self) -> str:
        if self._pending is None:
            self.refresh_count += 1
            self._pending = asyncio.ensure_future(self._run())
            self._pending.add_done_callback(_retrieve_exception)
        # shield: one cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(self._pending)

    async def _run(self) -> str:
        try:
            return await self._refresh()
        finally:
            self._pending = None


class ApiClient:
    """JSON REST client for the dashboard backend.

    GET requests are retried on transport errors and 429/5xx with exponential
    backoff. Other methods are sent once: replaying a POST such as a notebook
    run has side effects.

    A 401 on any endpoint outside ``AUTH_EXEMPT_ENDPOINTS`` triggers a
    single-flight refresh and one replay with the new token. If the refresh
    fails, tokens are cleared, ``on_logout`` fires and ``AuthExpiredError``
    is raised.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        tokens: AuthTokens | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        max_retries: int = MAX_RETRIES,
        on_logout: Callable[[], None] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.tokens = tokens or AuthTokens()
        self.max_retries = max_retries
        self.on_logout = on_logout
        self.refresher = TokenRefresher(self._refresh_access_token)

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._sleep = sleep
        self._token_listeners: dict[TokenListener, None] = {}

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    def add_token_listener(self, listener: TokenListener) -> None:
        """Call ``listener(new_access_token)`` after every successful refresh."""
        self._token_listeners[listener] = None

    def remove_token_listener(self, listener: TokenListener) -> None:
        self._token_listeners.pop(listener, None)

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, *, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, *, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        method = method.upper()
        sent_token = self.tokens.access_token
        response = await self._send(method, path, token=sent_token, params=params, json=json)

        if response.status_code == 401 and not _is_auth_exempt(path):
            if sent_token and not self.tokens.access_token:
                # A concurrent refresh already failed and logged out.
                raise AuthExpiredError("Session expired", status_code=401)
            if self.tokens.access_token and self.tokens.access_token != sent_token:
                # Someone refreshed while this request was in flight.
                token = self.tokens.access_token
            else:
                token = await self.refresher.refresh()
            response = await self._send(method, path, token=token, params=params, json=json)
            if response.status_code == 401:
                # Only the first replay rejected with the live token logs out.
                if self.tokens.access_token == token:
                    self._logout()
                raise AuthExpiredError("Request unauthorized after token refresh", status_code=401)

        return self._parse(response)

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _send(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        url = self.url_for(path)
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        retries = self.max_retries if method == "GET" else 0
        for attempt in range(retries + 1):
            try:
                response = await self._http_client.request(
                    method, url, params=params, json=json, headers=headers
                )
            except httpx.HTTPError as exc:
                if attempt == retries:
                    raise ApiError(f"Request failed: {exc}") from exc
                await self._sleep(0.5 * (2**attempt))
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < retries:
                await self._sleep(0.5 * (2**attempt))
                continue

            return response

        raise ApiError("Request failed after retries")

    async def _refresh_access_token(self) -> str:
        if not self.tokens.refresh_token:
            self._logout()
            raise AuthExpiredError("No refresh token available")

        try:
            response = await self._http_client.post(
                self.url_for(AUTH_REFRESH_ENDPOINT),
                json={"refreshToken": self.tokens.refresh_token},
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            self._logout()
            raise AuthExpiredError(f"Token refresh failed: {exc}") from exc

        if response.status_code >= 400:
            self._logout()
            raise AuthExpiredError("Token refresh rejected", status_code=response.status_code)

        try:
            payload = _unwrap(response.json())
        except ValueError as exc:
            self._logout()
            raise AuthExpiredError("Token refresh returned non-JSON response") from exc

        access_token = ""
        if isinstance(payload, dict):
            access_token = payload.get("accessToken") or payload.get("access_token") or ""
        if not access_token:
            self._logout()
            raise AuthExpiredError("Token refresh response has no access token")

        self.tokens.access_token = access_token
        new_refresh = payload.get("refreshToken") or payload.get("refresh_token")
        if new_refresh:
            self.tokens.refresh_token = new_refresh
        logger.info("Access token refreshed")

        for listener in list(self._token_listeners):
            try:
                listener(access_token)
            except Exception:
                logger.exception("Error in token listener %r", listener)
        return access_token

    def _logout(self) -> None:
        logger.warning("Authentication expired; clearing local tokens")
        self.tokens.clear()
        if self.on_logout is not None:
            self.on_logout()

    def _parse(self, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            raise ApiError(
                message=self._error_message(response),
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError("API returned non-JSON response", status_code=response.status_code) from exc
        return _unwrap(payload)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
            if isinstance(payload, dict):
                err = payload.get("error")
                if isinstance(err, dict) and err.get("message"):
                    return str(err["message"])
                if isinstance(err, str) and err:
                    return err
                if payload.get("message"):
                    return str(payload["message"])
        except ValueError:
            pass
        return response.text.strip() or "API request failed"


def _is_auth_exempt(path: str) -> bool:
    normalized = "/" + path.lstrip("/")
    return any(normalized.startswith(prefix) for prefix in AUTH_EXEMPT_ENDPOINTS)


def _unwrap(payload: Any) -> Any:
    """Strip the ``{"success": ..., "data": ...}`` envelope the backend uses."""
    if isinstance(payload, dict) and "success" in payload and "data" in payload:
        return payload["data"]
    return payload


def _retrieve_exception(task: asyncio.Future[Any]) -> None:
    # the refresh error is re-raised to waiters; this only silences teardown
    if not task.cancelled():
        task.exception()
