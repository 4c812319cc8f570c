"""Persistence for payment-gated jobs, keyed by Lightning payment hash."""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    UNPAID = "UNPAID"
    WORKING = "WORKING"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.ERROR)


# Older records used a second spelling for the unpaid state.
LEGACY_STATES = {"NOT_PAID": JobState.UNPAID.value}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def job_state(record: Dict[str, Any]) -> JobState:
    raw = record.get("state") or JobState.UNPAID.value
    return JobState(LEGACY_STATES.get(raw, raw))


class JobStore:
    """JSON-file backed job records.

    Every mutation happens under one lock and is persisted before the lock is
    released, so ``compare_and_set`` is atomic for all callers in the process.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                logger.error("Job store %s is not valid JSON; starting empty", self.path)
                data = {}
        if not isinstance(data, dict):
            data = {}
        records: Dict[str, Dict[str, Any]] = {}
        for payment_hash, record in data.items():
            if not isinstance(record, dict):
                continue
            record = dict(record)
            try:
                record["state"] = job_state(record).value
            except ValueError:
                logger.error("Skipping job %s with unknown state %r", payment_hash, record.get("state"))
                continue
            records[payment_hash] = record
        self._records = records

    def _persist(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(self._records, handle, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def create(self, payment_hash: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(payload)
        record["payment_hash"] = payment_hash
        record.setdefault("state", JobState.UNPAID.value)
        record.setdefault("settled", False)
        record.setdefault("request_data", None)
        record.setdefault("request_response", None)
        record.setdefault("created_at", utcnow_iso())
        record.setdefault("updated_at", record["created_at"])
        with self._lock:
            if payment_hash in self._records:
                raise KeyError(payment_hash)
            self._records[payment_hash] = record
            self._persist()
        return dict(record)

    def get(self, payment_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(payment_hash)
            return dict(record) if record is not None else None

    def compare_and_set(
        self,
        payment_hash: str,
        expected: JobState,
        updates: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Apply ``updates`` only if the stored state still equals ``expected``.

        Returns the updated record, or ``None`` when the job is missing or its
        state has moved on.
        """
        with self._lock:
            current = self._records.get(payment_hash)
            if current is None or job_state(current) is not expected:
                return None
            record = dict(current)
            record.update(updates)
            if isinstance(record.get("state"), JobState):
                record["state"] = record["state"].value
            record["updated_at"] = utcnow_iso()
            self._records[payment_hash] = record
            self._persist()
            return dict(record)

    def attach_request(self, payment_hash: str, request_data: Any) -> Optional[Dict[str, Any]]:
        return self.compare_and_set(payment_hash, JobState.UNPAID, {"request_data": request_data})

    def mark_settled(self, payment_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            current = self._records.get(payment_hash)
            if current is None:
                return None
            if current.get("settled"):
                return dict(current)
            record = dict(current)
            record["settled"] = True
            record["settled_at"] = utcnow_iso()
            record["updated_at"] = record["settled_at"]
            self._records[payment_hash] = record
            self._persist()
            return dict(record)

    def start(self, payment_hash: str) -> Optional[Dict[str, Any]]:
        """Claim a settled job for dispatch; only one caller can win."""
        return self.compare_and_set(
            payment_hash,
            JobState.UNPAID,
            {"state": JobState.WORKING, "started_at": utcnow_iso()},
        )

    def finish(self, payment_hash: str, state: JobState, response: Any) -> Optional[Dict[str, Any]]:
        if not state.terminal:
            raise ValueError(f"{state.value} is not a terminal state")
        return self.compare_and_set(
            payment_hash,
            JobState.WORKING,
            {"state": state, "request_response": response, "finished_at": utcnow_iso()},
        )

    def count(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = ["JobState", "JobStore", "job_state", "utcnow_iso"]
