"""LNURL-pay client for Lightning-address invoice issuance.

Resolves ``user@domain`` through the well-known ``lnurlp`` endpoint, asks the
callback for a bolt11 invoice with an LUD-21 ``verify`` URL and exposes the
settlement check used by the payment verifier.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import bolt11
import httpx
from bolt11.exceptions import Bolt11Exception

from .errors import InvoiceDecodeError, TransportError

logger = logging.getLogger(__name__)

PaymentHashDecoder = Callable[[str], str]


@dataclass(frozen=True)
class PayMetadata:
    callback: str
    min_sendable: int
    max_sendable: int


@dataclass(frozen=True)
class IssuedInvoice:
    pr: str
    verify: str
    routes: List[Any] = field(default_factory=list)


def decode_payment_hash(payment_request: str) -> str:
    """Return the hex payment hash tagged in a bolt11 payment request."""
    try:
        decoded = bolt11.decode(payment_request)
    except (Bolt11Exception, ValueError, KeyError) as exc:
        raise InvoiceDecodeError(f"Unable to decode payment request: {exc}") from exc
    payment_hash = getattr(decoded, "payment_hash", None)
    if not payment_hash:
        raise InvoiceDecodeError("Payment request carries no payment_hash tag")
    return str(payment_hash)


def well_known_url(address: str) -> str:
    user, sep, domain = address.strip().partition("@")
    if not sep or not user or not domain or "@" in domain:
        raise ValueError(f"Invalid Lightning address: {address!r}")
    return f"https://{domain}/.well-known/lnurlp/{user}"


def _require_json_object(response: httpx.Response, what: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise TransportError(f"{what} returned invalid JSON") from exc
    if not isinstance(body, dict):
        raise TransportError(f"{what} returned invalid response")
    if str(body.get("status", "")).upper() == "ERROR":
        raise TransportError(f"{what} error: {body.get('reason') or 'unknown'}")
    return body


class LnurlPayClient:
    def __init__(
        self,
        address: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.address = address
        self.timeout = timeout
        self._transport = transport

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response
        except httpx.HTTPError as exc:
            logger.warning("LNURL request failed (%s): %s", url, exc)
            raise TransportError(f"Request to {url} failed: {exc}") from exc

    async def fetch_metadata(self) -> PayMetadata:
        url = well_known_url(self.address)
        body = _require_json_object(await self._get(url), "LNURL-pay endpoint")
        try:
            return PayMetadata(
                callback=str(body["callback"]),
                min_sendable=int(body["minSendable"]),
                max_sendable=int(body["maxSendable"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"LNURL-pay metadata incomplete: {exc}") from exc

    async def request_invoice(self, callback: str, amount_msats: int, expiry_seconds: int) -> IssuedInvoice:
        params = {"amount": int(amount_msats), "expiry": int(expiry_seconds)}
        body = _require_json_object(await self._get(callback, params=params), "Invoice callback")
        pr = body.get("pr")
        if not isinstance(pr, str) or not pr:
            raise InvoiceDecodeError("Invoice callback returned no payment request")
        verify = body.get("verify")
        if not isinstance(verify, str) or not verify:
            raise TransportError("Invoice callback returned no verify URL")
        routes = body.get("routes") or []
        return IssuedInvoice(pr=pr, verify=verify, routes=list(routes))

    async def is_settled(self, verify_url: str) -> bool:
        body = _require_json_object(await self._get(verify_url), "Verify endpoint")
        return bool(body.get("settled"))


__all__ = [
    "IssuedInvoice",
    "LnurlPayClient",
    "PayMetadata",
    "PaymentHashDecoder",
    "decode_payment_hash",
    "well_known_url",
]
