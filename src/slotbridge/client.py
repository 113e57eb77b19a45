"""JSON-RPC client for the SimplyBook scheduling provider."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Callable

import httpx
from pydantic import SecretStr

from .config import Settings
from .exceptions import AuthenticationError, RpcError, TransportError, UpstreamRejected

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
ADMIN_PATH = "/admin"
PUBLIC_PATH = ""


class TokenCache:
    """Cache for the provider's short-lived session token."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._token: str | None = None
        self._fetched_at: float | None = None
        self.lock = asyncio.Lock()

    def get(self) -> str | None:
        if self._token and self._fetched_at is not None:
            if self._clock() - self._fetched_at < self.ttl_seconds:
                return self._token
        return None

    def set(self, token: str) -> None:
        self._token = token
        self._fetched_at = self._clock()

    def invalidate(self) -> None:
        self._token = None
        self._fetched_at = None


def _secret_value(value: SecretStr | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return str(value)


class SimplyBookClient:
    """Admin (token) and public (anonymous) procedure calls over one transport."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        token_cache: TokenCache | None = None,
    ) -> None:
        self.settings = settings
        self.token_cache = token_cache or TokenCache(settings.token_ttl_seconds)
        self._ids = itertools.count(1)
        self.http = http or httpx.AsyncClient(
            base_url=settings.simplybook_url,
            timeout=httpx.Timeout(
                connect=5.0,
                read=settings.rpc_timeout_seconds,
                write=5.0,
                pool=5.0,
            ),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def get_token(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached
        async with self.token_cache.lock:
            cached = self.token_cache.get()
            if cached:
                return cached
            token = await self._login()
            self.token_cache.set(token)
            logger.info("simplybook_token_refreshed")
            return token

    async def _login(self) -> str:
        company = self.settings.simplybook_company_login
        api_key = _secret_value(self.settings.simplybook_api_key).strip()
        if not company or not api_key:
            raise AuthenticationError(
                "Scheduling provider credentials are not configured",
                code="simplybook_credentials_missing",
            )
        try:
            result = await self._post_rpc(LOGIN_PATH, "getToken", [company, api_key])
        except RpcError as exc:
            raise AuthenticationError(
                "Scheduling provider rejected the credentials",
                code="simplybook_login_rejected",
                details=exc.details,
            ) from exc
        if not isinstance(result, str) or not result.strip():
            raise AuthenticationError(
                "No token in login response", code="simplybook_token_missing"
            )
        return result

    async def call_authenticated(self, method: str, params: list[Any] | None = None) -> Any:
        token = await self.get_token()
        headers = {
            "X-Company-Login": self.settings.simplybook_company_login,
            "X-Token": token,
        }
        return await self._post_rpc(ADMIN_PATH, method, params or [], headers=headers)

    async def call_anonymous(self, method: str, params: list[Any] | None = None) -> Any:
        headers: dict[str, str] = {}
        if self.settings.simplybook_company_login:
            headers["X-Company-Login"] = self.settings.simplybook_company_login
        return await self._post_rpc(PUBLIC_PATH, method, params or [], headers=headers)

    async def _post_rpc(
        self,
        path: str,
        method: str,
        params: list[Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        started = time.perf_counter()
        try:
            response = await self.http.post(path or "/", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"scheduling_timeout: {method} timed out after {self.settings.rpc_timeout_seconds}s",
                code="upstream_timeout",
                details={"method": method},
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"scheduling_connection_failed: {exc}",
                code="upstream_unreachable",
                details={"method": method},
            ) from exc

        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.debug(
            "simplybook_rpc_call",
            extra={"method": method, "status": response.status_code, "elapsed_ms": elapsed_ms},
        )

        if response.status_code >= 500:
            raise TransportError(
                f"scheduling_error_{response.status_code}",
                code="upstream_unavailable",
                details={"method": method, "status": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamRejected(
                f"Scheduling provider returned a non-JSON response to {method}",
                code="upstream_invalid_response",
                details={"method": method, "status": response.status_code},
            ) from exc

        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            if isinstance(error, dict):
                raise RpcError(error.get("code"), str(error.get("message") or "unknown error"), method)
            raise RpcError(None, str(error), method)

        if response.status_code >= 400:
            raise UpstreamRejected(
                f"scheduling_error_{response.status_code}",
                code="upstream_rejected",
                details={"method": method, "status": response.status_code},
            )

        if not isinstance(body, dict) or "result" not in body:
            raise UpstreamRejected(
                f"Scheduling provider response to {method} has no result",
                code="upstream_invalid_response",
                details={"method": method},
            )
        return body["result"]

    async def get_event_list(self) -> Any:
        return await self.call_authenticated("getEventList")

    async def get_unit_list(self) -> Any:
        return await self.call_authenticated("getUnitList")

    async def get_work_calendar(self, year: int, month: int, unit_id: str | None = None) -> Any:
        params: list[Any] = [year, month]
        if unit_id is not None:
            params.append(unit_id)
        return await self.call_authenticated("getWorkCalendar", params)

    async def get_first_working_day(self, unit_id: str) -> Any:
        return await self.call_authenticated("getFirstWorkingDay", [unit_id])

    async def get_start_time_matrix(
        self,
        date_from: str,
        date_to: str,
        service_id: str,
        unit_id: str | None = None,
        count: int = 1,
    ) -> Any:
        return await self.call_authenticated(
            "getStartTimeMatrix", [date_from, date_to, service_id, unit_id, count]
        )

    async def get_available_units(self, service_id: str, datetime: str, count: int = 1) -> Any:
        return await self.call_authenticated("getAvailableUnits", [service_id, datetime, count])

    async def get_additional_fields(self, service_id: str) -> Any:
        return await self.call_authenticated("getAdditionalFields", [service_id])

    async def get_client_list(self, search: str, limit: int = 1) -> Any:
        return await self.call_authenticated("getClientList", [search, limit])

    async def add_client(self, client_data: dict[str, Any]) -> Any:
        return await self.call_authenticated("addClient", [client_data])

    async def book(
        self,
        service_id: str,
        unit_id: str | None,
        date: str,
        time: str,
        client_data: dict[str, Any],
        additional_fields: dict[str, Any],
        count: int = 1,
    ) -> Any:
        return await self.call_authenticated(
            "book", [service_id, unit_id, date, time, client_data, additional_fields, count]
        )

    async def confirm_booking(self, booking_id: str, signature: str) -> Any:
        return await self.call_authenticated("confirmBooking", [booking_id, signature])

    async def get_event_list_public(
        self, date_from: str | None = None, date_to: str | None = None
    ) -> Any:
        params: list[Any] = []
        if date_from is not None:
            params = [date_from, date_to]
        return await self.call_anonymous("getEventListPublic", params)

    async def get_service_list_public(self) -> Any:
        return await self.call_anonymous("getServiceListPublic")
