"""Invoice issuance: price a service, obtain a bolt11 invoice, open a job."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict

from .errors import GatewayError, PriceOutOfRange
from .jobs import JobState, JobStore
from .lnurl import LnurlPayClient, PaymentHashDecoder, decode_payment_hash
from .rates import BitcoinPriceSource
from .services import ServiceRegistry

logger = logging.getLogger(__name__)

SUCCESS_DESCRIPTION = "Open to get the confirmation code for your purchase."


def result_url(endpoint: str, service: str, payment_hash: str) -> str:
    return f"{endpoint.rstrip('/')}/{service}/{payment_hash}/get_result"


class InvoiceIssuer:
    def __init__(
        self,
        store: JobStore,
        registry: ServiceRegistry,
        rates: BitcoinPriceSource,
        lnurl: LnurlPayClient,
        *,
        endpoint: str,
        margin_pct: Decimal = Decimal("0"),
        expiry_seconds: int = 3600,
        decoder: PaymentHashDecoder = decode_payment_hash,
    ) -> None:
        self.store = store
        self.registry = registry
        self.rates = rates
        self.lnurl = lnurl
        self.endpoint = endpoint
        self.margin_pct = margin_pct
        self.expiry_seconds = expiry_seconds
        self.decoder = decoder

    async def quote(self, service: str) -> int:
        spec = self.registry.resolve(service)
        rate = await self.rates.get_rate()
        return spec.price_msats(rate, self.margin_pct)

    async def issue(self, service: str) -> Dict[str, Any]:
        """Create a fresh invoice and an ``UNPAID`` job for ``service``.

        Nothing is persisted unless every step succeeds.
        """
        price = await self.quote(service)

        metadata = await self.lnurl.fetch_metadata()
        if not metadata.min_sendable <= price <= metadata.max_sendable:
            raise PriceOutOfRange(
                f"Price {price} msats for {service} outside sendable range "
                f"[{metadata.min_sendable}, {metadata.max_sendable}]"
            )

        issued = await self.lnurl.request_invoice(metadata.callback, price, self.expiry_seconds)
        payment_hash = self.decoder(issued.pr)

        success_action = {
            "tag": "url",
            "url": result_url(self.endpoint, service, payment_hash),
            "description": SUCCESS_DESCRIPTION,
        }
        try:
            record = self.store.create(
                payment_hash,
                {
                    "service": service,
                    "price": price,
                    "invoice": {
                        "pr": issued.pr,
                        "verify": issued.verify,
                        "routes": issued.routes,
                        "successAction": success_action,
                    },
                    "verify_url": issued.verify,
                    "state": JobState.UNPAID.value,
                },
            )
        except KeyError as exc:
            raise GatewayError(f"Payment hash {payment_hash} already issued", status_code=409) from exc

        logger.info("Issued invoice for %s: hash=%s price_msats=%s", service, payment_hash, price)
        return record


__all__ = ["InvoiceIssuer", "result_url"]
