"""Job lifecycle: payment gating, single dispatch and result storage.

State moves ``UNPAID -> WORKING -> DONE | ERROR``. Settlement is tracked as a
flag on the job, never as a state. The only way into ``WORKING`` is the store's
compare-and-set, so concurrent polls of a freshly settled job dispatch it once.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from .errors import DownstreamError, JobNotFound, Timeout
from .invoices import InvoiceIssuer
from .jobs import JobState, JobStore, job_state
from .services import STRATEGY_SYNC, ServiceRegistry, ServiceSpec
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    WORKING = "WORKING"
    DONE = "DONE"
    ERROR = "ERROR"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    job: Dict[str, Any]

    @property
    def response(self) -> Any:
        return self.job.get("request_response")


def _outcome_for(record: Dict[str, Any]) -> PollOutcome:
    state = job_state(record)
    if state is JobState.DONE:
        return PollOutcome.DONE
    if state is JobState.ERROR:
        return PollOutcome.ERROR
    return PollOutcome.WORKING


def error_payload(exc: Exception) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": str(exc), "reason": type(exc).__name__}
    if isinstance(exc, DownstreamError) and exc.payload is not None:
        payload["detail"] = exc.payload
    return payload


class JobController:
    def __init__(
        self,
        store: JobStore,
        registry: ServiceRegistry,
        issuer: InvoiceIssuer,
        verifier: PaymentVerifier,
    ) -> None:
        self.store = store
        self.registry = registry
        self.issuer = issuer
        self.verifier = verifier
        self._tasks: Set[asyncio.Task] = set()

    def _load(self, service: str, payment_hash: str) -> Dict[str, Any]:
        record = self.store.get(payment_hash)
        if record is None or record.get("service") != service:
            raise JobNotFound(payment_hash)
        return record

    async def create_job(self, service: str, request_data: Any) -> Dict[str, Any]:
        record = await self.issuer.issue(service)
        attached = self.store.attach_request(record["payment_hash"], request_data)
        return attached if attached is not None else record

    async def check_payment(self, service: str, payment_hash: str) -> Tuple[bool, Dict[str, Any]]:
        self._load(service, payment_hash)
        return await self.verifier.is_paid(payment_hash)

    async def poll_result(self, service: str, payment_hash: str) -> PollResult:
        self._load(service, payment_hash)
        settled, record = await self.verifier.is_paid(payment_hash)
        if not settled:
            return PollResult(PollOutcome.PAYMENT_REQUIRED, record)

        if job_state(record) is not JobState.UNPAID:
            return PollResult(_outcome_for(record), record)

        spec = self.registry.resolve(record["service"])
        claimed = self.store.start(payment_hash)
        if claimed is None:
            current = self.store.get(payment_hash) or record
            return PollResult(_outcome_for(current), current)

        logger.info("Dispatching %s job %s (%s)", spec.name, payment_hash, spec.strategy)
        task = asyncio.create_task(self._dispatch(spec, claimed))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

        if spec.strategy == STRATEGY_SYNC:
            # Shielded so a dropped client connection cannot strand the job in WORKING.
            finished = await asyncio.shield(task)
            return PollResult(_outcome_for(finished), finished)
        return PollResult(PollOutcome.WORKING, claimed)

    async def _dispatch(self, spec: ServiceSpec, record: Dict[str, Any]) -> Dict[str, Any]:
        payment_hash = record["payment_hash"]
        try:
            result = await spec.run(record.get("request_data"))
        except asyncio.CancelledError:
            logger.warning("%s job %s cancelled before completion", spec.name, payment_hash)
            self.store.finish(payment_hash, JobState.ERROR, {"error": "Dispatch cancelled", "reason": "Cancelled"})
            raise
        except (DownstreamError, Timeout) as exc:
            logger.warning("%s job %s failed: %s", spec.name, payment_hash, exc)
            state, response = JobState.ERROR, error_payload(exc)
        except Exception as exc:
            logger.exception("%s job %s crashed", spec.name, payment_hash)
            state, response = JobState.ERROR, {"error": "Internal dispatch failure", "reason": type(exc).__name__}
        else:
            logger.info("%s job %s completed", spec.name, payment_hash)
            state, response = JobState.DONE, result

        finished = self.store.finish(payment_hash, state, response)
        if finished is None:
            logger.error("Job %s left WORKING before its result was stored", payment_hash)
            return self.store.get(payment_hash) or record
        return finished

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Dispatch task failed outside the job lifecycle: %s", exc, exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight dispatches, e.g. on shutdown."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Drain dispatches, then cancel stragglers so each one records ERROR."""
        await self.drain(timeout=timeout)
        pending = list(self._tasks)
        if not pending:
            return
        logger.warning("Cancelling %s dispatches still running at shutdown", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)


__all__ = ["JobController", "PollOutcome", "PollResult", "error_payload"]
