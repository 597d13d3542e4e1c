"""Client for the Social Health Authority (SHA) claims API.

Covers single and batch claim submission and status lookups. Every request
carries the facility API key as a bearer token and the facility code in
``X-Provider-Code``.

Example usage:
    async with SHAClient(settings.sha) as client:
        response = await client.submit_single_claim(claim, items)
        reference = response.reference
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from clinicsync.core.config import SHASettings

logger = logging.getLogger(__name__)


class SHAClientError(Exception):
    """Base exception for SHA API errors.

    Attributes:
        status_code: HTTP status returned by SHA, or None if unreachable.
        body: Decoded error body, when SHA returned one.
    """

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class SHAConnectionError(SHAClientError):
    """SHA API could not be reached."""


class SHANotConfiguredError(SHAClientError):
    """SHA base URL or API key is missing."""


@dataclass(frozen=True)
class SHAResponse:
    """Decoded response of a successful SHA call."""

    status_code: int
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def reference(self) -> str | None:
        """Claim reference, reported as ``reference`` or ``claim_reference``."""
        return self.data.get("reference") or self.data.get("claim_reference")

    @property
    def batch_reference(self) -> str | None:
        return self.data.get("batch_reference") or self.data.get("reference")

    @property
    def status(self) -> str | None:
        return self.data.get("status")


def _iso_date(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).split("T", 1)[0]


def _number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    return float(value)


def build_claim_payload(
    claim: Mapping[str, Any],
    items: Sequence[Mapping[str, Any]],
    provider_code: str,
) -> dict[str, Any]:
    """Build the SHA wire payload for one claim and its service lines."""
    return {
        "claim_number": claim["claim_number"],
        "member_number": claim.get("sha_member_number") or claim.get("member_number"),
        "visit_date": _iso_date(claim.get("visit_date")),
        "diagnosis": {
            "code": claim.get("diagnosis_code"),
            "description": claim.get("diagnosis_description"),
        },
        "services": [
            {
                "service_code": item.get("service_code"),
                "description": item.get("service_description") or item.get("description"),
                "quantity": item.get("quantity", 1),
                "unit_price": _number(item.get("unit_price")),
                "total_price": _number(item.get("total_amount") or item.get("total_price")),
            }
            for item in items
        ],
        "total_amount": _number(claim.get("claim_amount") or claim.get("total_amount")),
        "provider_code": provider_code,
    }


class SHAClient:
    """Async HTTP client for the SHA claims API.

    Can be used as an async context manager or held for the lifetime of a
    worker process and closed with aclose().
    """

    def __init__(
        self,
        settings: SHASettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def provider_code(self) -> str:
        return self._settings.facility_code

    async def __aenter__(self) -> SHAClient:
        self._get_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if not self._settings.base_url:
            raise SHANotConfiguredError("SHA API base URL is not configured")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=self._settings.timeout,
                transport=self._transport,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self._settings.api_key.get_secret_value()}",
                    "X-Provider-Code": self._settings.facility_code,
                },
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> SHAResponse:
        client = self._get_client()
        try:
            response = await client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = e.response.text
            logger.warning(
                "SHA API error: %s %s -> %d",
                method,
                path,
                e.response.status_code,
            )
            raise SHAClientError(
                f"SHA API returned {e.response.status_code} for {path}",
                status_code=e.response.status_code,
                body=body,
            ) from e
        except httpx.RequestError as e:
            logger.warning("SHA API unreachable: %s %s: %s", method, path, e)
            raise SHAConnectionError(f"Cannot reach SHA API: {e}") from e

        data = response.json() if response.content else {}
        return SHAResponse(status_code=response.status_code, data=data)

    async def submit_single_claim(
        self,
        claim: Mapping[str, Any],
        items: Sequence[Mapping[str, Any]],
    ) -> SHAResponse:
        """Submit one claim to SHA.

        Raises:
            SHAClientError: If SHA rejects the request or cannot be reached.
        """
        payload = build_claim_payload(claim, items, self.provider_code)
        logger.info("Submitting claim %s to SHA", claim["claim_number"])
        return await self._request("POST", "/claims/submit", payload)

    async def submit_claim_batch(
        self,
        batch: Mapping[str, Any],
        claims: Sequence[tuple[Mapping[str, Any], Sequence[Mapping[str, Any]]]],
    ) -> SHAResponse:
        """Submit a batch of claims.

        Args:
            batch: Batch row (batch_number, batch_date).
            claims: (claim, items) pairs included in the batch.
        """
        payloads = [build_claim_payload(claim, items, self.provider_code) for claim, items in claims]
        payload = {
            "batch_number": batch["batch_number"],
            "batch_date": _iso_date(batch.get("batch_date")),
            "provider_code": self.provider_code,
            "claims": payloads,
            "total_claims": len(payloads),
            "total_amount": sum(p["total_amount"] for p in payloads),
        }
        logger.info("Submitting batch %s (%d claims) to SHA", batch["batch_number"], len(payloads))
        return await self._request("POST", "/claims/batch-submit", payload)

    async def check_claim_status(self, sha_reference: str) -> SHAResponse:
        return await self._request("GET", f"/claims/status/{sha_reference}")

    async def check_batch_status(self, batch_reference: str) -> SHAResponse:
        return await self._request("GET", f"/claims/batch-status/{batch_reference}")
