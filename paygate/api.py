"""HTTP API for invoice issuance, payment checks and result polling."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import GatewaySettings
from .errors import GatewayError
from .lifecycle import JobController, PollOutcome

logger = logging.getLogger(__name__)

# 424 Failed Dependency: paid job whose provider call failed.
HTTP_JOB_FAILED = status.HTTP_424_FAILED_DEPENDENCY


class InvoicePayload(BaseModel):
    pr: str
    verify: str
    routes: List[Any] = []
    successAction: Dict[str, Any]


class CreateJobResponse(BaseModel):
    paymentHash: str
    service: str
    price: int
    invoice: InvoicePayload


class PaymentRequiredResponse(BaseModel):
    paymentHash: str
    state: str
    message: str
    invoice: InvoicePayload


class WorkingResponse(BaseModel):
    paymentHash: str
    state: str
    message: str


class PaymentStatusResponse(BaseModel):
    invoice: InvoicePayload
    isPaid: bool


class ServiceOffering(BaseModel):
    service: str
    endpoint: str
    upstream: str
    price_usd: str
    strategy: str
    description: str
    input_schema: Dict[str, Any]
    result_schema: Dict[str, Any]


class ServicesResponse(BaseModel):
    services: List[ServiceOffering]


class HealthResponse(BaseModel):
    status: str
    jobs: int
    in_flight: int


def _invoice(record: Dict[str, Any]) -> InvoicePayload:
    return InvoicePayload(**record["invoice"])


def create_app(controller: JobController, settings: GatewaySettings) -> FastAPI:
    shutdown_timeout = float(getattr(settings, "poll_deadline_seconds", 600.0))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await controller.shutdown(timeout=shutdown_timeout)

    app = FastAPI(title="Lightning Pay-Per-Use Gateway", version="1.0.0", lifespan=lifespan)
    endpoint = str(getattr(settings, "endpoint", "")).rstrip("/")

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s: %s", type(exc).__name__, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        try:
            jobs = controller.store.count()
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Health check failed: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc))
        return HealthResponse(status="ok", jobs=jobs, in_flight=controller.in_flight)

    @app.get("/services", response_model=ServicesResponse)
    async def list_services() -> ServicesResponse:
        offerings = [
            ServiceOffering(
                service=spec.name,
                endpoint=f"{endpoint}/{spec.name}",
                upstream=spec.upstream_url,
                price_usd=str(spec.price_usd),
                strategy=spec.strategy,
                description=spec.description,
                input_schema=spec.input_schema,
                result_schema=spec.result_schema,
            )
            for spec in controller.registry
        ]
        return ServicesResponse(services=offerings)

    @app.post("/{service}", response_model=CreateJobResponse, status_code=status.HTTP_402_PAYMENT_REQUIRED)
    async def create_job(service: str, payload: Optional[Dict[str, Any]] = Body(default=None)) -> JSONResponse:
        record = await controller.create_job(service, payload or {})
        body = CreateJobResponse(
            paymentHash=record["payment_hash"],
            service=record["service"],
            price=record["price"],
            invoice=_invoice(record),
        )
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body.model_dump())

    @app.get("/{service}/{payment_hash}/check_payment", response_model=PaymentStatusResponse)
    async def check_payment(service: str, payment_hash: str) -> PaymentStatusResponse:
        settled, record = await controller.check_payment(service, payment_hash)
        return PaymentStatusResponse(invoice=_invoice(record), isPaid=settled)

    @app.get("/{service}/{payment_hash}/get_result")
    async def get_result(service: str, payment_hash: str) -> JSONResponse:
        result = await controller.poll_result(service, payment_hash)
        job = result.job
        if result.outcome is PollOutcome.PAYMENT_REQUIRED:
            body = PaymentRequiredResponse(
                paymentHash=payment_hash,
                state=job["state"],
                message="Payment required",
                invoice=_invoice(job),
            )
            return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body.model_dump())
        if result.outcome is PollOutcome.WORKING:
            body = WorkingResponse(paymentHash=payment_hash, state=job["state"], message="Job is still processing")
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump())
        if result.outcome is PollOutcome.ERROR:
            return JSONResponse(status_code=HTTP_JOB_FAILED, content=result.response)
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.response)

    return app


def run_api(app: FastAPI, settings: GatewaySettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "run_api"]
