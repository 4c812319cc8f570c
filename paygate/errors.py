"""Error taxonomy shared by the gateway core and the HTTP layer."""
from __future__ import annotations


class GatewayError(Exception):
    """Base error carrying the HTTP status the API should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class InvalidRate(GatewayError):
    status_code = 500


class PriceOutOfRange(GatewayError):
    status_code = 500


class InvoiceDecodeError(GatewayError):
    status_code = 502


class RateUnavailable(GatewayError):
    status_code = 503


class TransportError(GatewayError):
    status_code = 502


class JobNotFound(GatewayError):
    status_code = 404

    def __init__(self, payment_hash: str) -> None:
        super().__init__(f"No job for payment hash {payment_hash}")
        self.payment_hash = payment_hash


class UnknownService(GatewayError):
    status_code = 404

    def __init__(self, service: str) -> None:
        super().__init__(f"Unknown service {service}")
        self.service = service


class DownstreamError(GatewayError):
    """A provider rejected or failed a dispatched job."""

    status_code = 502

    def __init__(self, message: str, payload: object = None, status_code: int | None = None) -> None:
        super().__init__(message, status_code)
        self.payload = payload


class Timeout(GatewayError):
    status_code = 504


__all__ = [
    "DownstreamError",
    "GatewayError",
    "InvalidRate",
    "InvoiceDecodeError",
    "JobNotFound",
    "PriceOutOfRange",
    "RateUnavailable",
    "Timeout",
    "TransportError",
    "UnknownService",
]
