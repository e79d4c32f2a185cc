"""
OTP Pipeline — Number Rental Provider

The orchestrator only sees the NumberProvider contract:

    acquire_number() -> AcquiredNumber(order_id, phone)
    fetch_otp(order_id) -> "123456"

JasaOtpProvider implements it against the JasaOTP HTTP API. Phones are
normalized to local form before they leave this module, and OTP codes
are pulled out of the provider's free text as the first run of 4-8
digits.

Errors:
    ProviderError — upstream said no, or the transport failed
    NoOtpYet      — order is alive but no code has arrived
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from core.exceptions import NoOtpYet, ProviderError
from core.phone import normalize

logger = logging.getLogger("otp_pipeline.provider")

_OTP_PATTERN = re.compile(r"\d{4,8}")


@dataclass
class AcquiredNumber:
    order_id: str
    phone: str


@runtime_checkable
class NumberProvider(Protocol):
    def acquire_number(self) -> AcquiredNumber: ...

    def fetch_otp(self, order_id: str) -> str: ...


def extract_otp(text: Any) -> str | None:
    """First run of 4-8 digits in provider text, or None."""
    if text is None:
        return None
    m = _OTP_PATTERN.search(str(text))
    return m.group(0) if m else None


class JasaOtpProvider:
    """
    JasaOTP REST client.

    Example:
        provider = JasaOtpProvider(api_key="...", country=6, service="bnt")
        num = provider.acquire_number()
        code = provider.fetch_otp(num.order_id)
    """

    def __init__(
        self,
        api_key: str,
        country: int = 6,
        service: str = "bnt",
        operator: str = "any",
        base_url: str = "https://api.jasaotp.id/v1",
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.country = country
        self.service = service
        self.operator = operator
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings, client: httpx.Client | None = None) -> JasaOtpProvider:
        p = settings.provider
        return cls(
            api_key=p.api_key,
            country=p.country,
            service=p.service,
            operator=p.operator,
            base_url=p.base_url,
            timeout_seconds=p.timeout_seconds,
            client=client,
        )

    def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        params = {**params, "api_key": self.api_key, "_": int(time.time() * 1000)}
        url = f"{self.base_url}/{path}"
        try:
            if self._client is not None:
                resp = self._client.get(url, params=params)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    resp = client.get(url, params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"HTTP {e.response.status_code}", path=path) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"transport error: {e}", path=path) from e
        except ValueError as e:
            raise ProviderError(f"invalid JSON from provider: {e}", path=path) from e
        if not isinstance(data, dict):
            raise ProviderError("unexpected provider response shape", path=path)
        return data

    def acquire_number(self) -> AcquiredNumber:
        data = self._get("order.php", {
            "negara": self.country,
            "layanan": self.service,
            "operator": self.operator,
        })
        if not data.get("success"):
            raise ProviderError(f"order failed: {data.get('message') or 'unknown reason'}")

        payload = data.get("data") or {}
        order_id = payload.get("order_id")
        raw_phone = payload.get("number")
        if not order_id or not raw_phone:
            raise ProviderError("order response missing order_id or number")

        phone = normalize(raw_phone)
        if not phone:
            raise ProviderError(f"provider returned unusable number: {raw_phone!r}")

        logger.info("Acquired number %s (order %s)", phone, order_id)
        return AcquiredNumber(order_id=str(order_id), phone=phone)

    def fetch_otp(self, order_id: str) -> str:
        data = self._get("sms.php", {"id": order_id})
        if data.get("success"):
            code = extract_otp((data.get("data") or {}).get("otp"))
            if code:
                return code
        raise NoOtpYet(f"no OTP yet for order {order_id}", order_id=order_id)
