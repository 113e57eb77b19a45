"""HTTP client for the Mollie payments API."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any
from urllib.parse import quote

import httpx

from .client import _secret_value
from .config import Settings
from .exceptions import AuthenticationError, PaymentProviderError, TransportError
from .models import PaymentSession, PaymentStatus

logger = logging.getLogger(__name__)


def format_amount(amount: Decimal | float | int | str) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class MollieClient:
    """Creates checkout sessions and reads back authoritative payment status."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.http = http or httpx.AsyncClient(
            base_url=settings.mollie_api_url,
            timeout=httpx.Timeout(
                connect=5.0,
                read=settings.rpc_timeout_seconds,
                write=5.0,
                pool=5.0,
            ),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    def _headers(self) -> dict[str, str]:
        api_key = _secret_value(self.settings.mollie_api_key).strip()
        if not api_key:
            raise AuthenticationError(
                "Payment provider API key is not configured", code="mollie_api_key_missing"
            )
        return {"Authorization": f"Bearer {api_key}"}

    async def _request(self, method: str, path: str, *, json: dict | None = None) -> dict:
        headers = self._headers()
        try:
            response = await self.http.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"payment_timeout: Request to {path} timed out",
                code="payment_provider_timeout",
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"payment_connection_failed: {exc}", code="payment_provider_unreachable"
            ) from exc

        if response.status_code >= 500:
            raise TransportError(
                f"payment_error_{response.status_code}", code="payment_provider_unavailable"
            )
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text}
        if response.status_code in {401, 403}:
            raise AuthenticationError(
                "Payment provider rejected the API key", code="mollie_auth_failed"
            )
        if response.status_code >= 400:
            raise PaymentProviderError(
                str(body.get("detail") or f"payment_error_{response.status_code}"),
                code="payment_provider_rejected",
                details={"status": response.status_code, "title": body.get("title")},
            )
        return body

    async def create_payment_session(
        self,
        amount: Decimal | float | int | str,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentSession:
        payload = {
            "amount": {"currency": self.settings.payment_currency, "value": format_amount(amount)},
            "description": description,
            "redirectUrl": redirect_url,
            "webhookUrl": webhook_url,
            "metadata": metadata or {},
        }
        body = await self._request("POST", "/payments", json=payload)
        checkout_url = ((body.get("_links") or {}).get("checkout") or {}).get("href")
        payment_id = body.get("id")
        if not payment_id or not checkout_url:
            raise PaymentProviderError(
                "Payment provider response lacks an id or checkout link",
                code="payment_session_incomplete",
            )
        logger.info(
            "payment_session_created",
            extra={"payment_id": payment_id, "amount": payload["amount"]["value"]},
        )
        return PaymentSession(payment_id=str(payment_id), checkout_url=str(checkout_url))

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        body = await self._request("GET", f"/payments/{quote(payment_id, safe='')}")
        amount = body.get("amount") or {}
        metadata = body.get("metadata")
        return PaymentStatus(
            payment_id=str(body.get("id") or payment_id),
            status=str(body.get("status") or "unknown"),
            amount=amount.get("value"),
            currency=amount.get("currency"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )
