"""CLI entrypoint for the payment-gated API gateway."""
from __future__ import annotations

import logging
import sys

from .api import create_app, run_api
from .config import GatewaySettings, settings
from .invoices import InvoiceIssuer
from .jobs import JobStore
from .lifecycle import JobController
from .lnurl import LnurlPayClient
from .rates import BitcoinPriceSource
from .services import build_registry
from .verifier import PaymentVerifier


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_controller(config: GatewaySettings) -> JobController:
    if not config.ln_address:
        raise SystemExit("LN_ADDRESS must be set to issue invoices")

    store = JobStore(config.jobs_path)
    registry = build_registry(config)
    rates = BitcoinPriceSource(config.btc_price_url, cache_seconds=config.btc_price_cache_seconds)
    lnurl = LnurlPayClient(config.ln_address, timeout=config.http_timeout_seconds)
    issuer = InvoiceIssuer(
        store,
        registry,
        rates,
        lnurl,
        endpoint=config.endpoint,
        margin_pct=config.profit_margin_pct,
        expiry_seconds=config.invoice_expiry_seconds,
    )
    verifier = PaymentVerifier(store, lnurl)
    return JobController(store, registry, issuer, verifier)


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting pay-per-use gateway")
    controller = build_controller(settings)
    logger.info(
        "Serving %s from %s (jobs stored at %s)",
        ", ".join(controller.registry.names()),
        settings.endpoint,
        settings.jobs_path,
    )

    app = create_app(controller, settings)
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    run_api(app, settings)


if __name__ == "__main__":
    main()
