from __future__ import annotations

"""Explicit job invocation records.

Every entry point receives the invocation it is serving instead of reading the
wall clock or scheduler state on its own, so a test can run any job exactly as
the scheduler would. The report carries the invocation back out together with
the outcome and counters that end up in the run summary log line.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ingestion.core.time_common import UTC, resolve_now


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"    # finished, some items failed
    PAUSED = "paused"      # priority gate active; no provider work done
    SKIPPED = "skipped"    # lease busy or job disabled
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class JobInvocation:
    job_name: str
    triggered_at: datetime
    job_id: uuid.UUID = field(default_factory=uuid.uuid4)
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def now(cls, job_name: str, *, at: Optional[datetime] = None, **params: Any) -> "JobInvocation":
        return cls(job_name=job_name, triggered_at=resolve_now(at), params=dict(params))


@dataclass(slots=True)
class JobReport:
    invocation: JobInvocation
    outcome: JobOutcome = JobOutcome.COMPLETED
    counters: dict[str, int] = field(default_factory=dict)
    detail: Optional[str] = None

    def bump(self, key: str, by: int = 1) -> None:
        self.counters[key] = self.counters.get(key, 0) + by

    def finish(self, *, errors_key: str = "errors") -> "JobReport":
        # Any item failure downgrades a completed run to partial; partial is still success.
        if self.outcome is JobOutcome.COMPLETED and self.counters.get(errors_key, 0) > 0:
            self.outcome = JobOutcome.PARTIAL
        return self

    def as_event(self) -> dict[str, Any]:
        return {
            "event": "job_run_summary",
            "job_name": self.invocation.job_name,
            "job_id": str(self.invocation.job_id),
            "triggered_at": self.invocation.triggered_at.astimezone(UTC).isoformat(),
            "outcome": self.outcome.value,
            "detail": self.detail,
            **{f"{k}_count": v for k, v in sorted(self.counters.items())},
        }


def log_event(logger: logging.Logger, event: dict) -> None:
    # Structured logs only; never log provider payloads.
    logger.info(json.dumps(event, ensure_ascii=False, default=str))
