"""Settlement checks against the invoice's verify URL."""
from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from .errors import JobNotFound
from .jobs import JobStore
from .lnurl import LnurlPayClient

logger = logging.getLogger(__name__)


class PaymentVerifier:
    def __init__(self, store: JobStore, lnurl: LnurlPayClient) -> None:
        self.store = store
        self.lnurl = lnurl

    async def is_paid(self, payment_hash: str) -> Tuple[bool, Dict[str, Any]]:
        """Return ``(settled, job)``; the verify URL is only hit until settlement is seen."""
        record = self.store.get(payment_hash)
        if record is None:
            raise JobNotFound(payment_hash)
        if record.get("settled"):
            return True, record

        if not await self.lnurl.is_settled(record["verify_url"]):
            return False, record

        updated = self.store.mark_settled(payment_hash)
        logger.info("Payment settled for %s (%s)", payment_hash, record.get("service"))
        return True, updated if updated is not None else record


__all__ = ["PaymentVerifier"]
