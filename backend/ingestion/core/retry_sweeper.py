"""Retry sweeper for artifacts stuck in `temporary_failure`.

Lock-free: it selects rows whose last attempt is older than a fixed minimum
interval and re-evaluates each through the same fetcher, one transaction per
artifact. The interval does not grow with retry_count; the retry ceiling is
what eventually ends an artifact's retries.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ingestion.core.fetch_outcome import ArtifactKind, OutcomeSnapshot, OutcomeStore
from ingestion.core.fetcher import ArtifactFetcher
from ingestion.core.time_common import resolve_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    kind: ArtifactKind
    selected: int = 0
    succeeded: int = 0
    still_failing: int = 0
    terminal: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "selected": self.selected,
            "succeeded": self.succeeded,
            "still_failing": self.still_failing,
            "terminal": self.terminal,
            "skipped": self.skipped,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


class RetrySweeper:
    def __init__(self, fetcher: ArtifactFetcher, outcomes: Optional[OutcomeStore] = None):
        self._fetcher = fetcher
        self._outcomes = outcomes or fetcher.outcomes

    def select_candidates(
        self,
        kind: ArtifactKind,
        *,
        max_per_run: int,
        min_interval: timedelta,
        now: Optional[datetime] = None,
    ) -> list[OutcomeSnapshot]:
        """Oldest-attempted first; rows attempted within `min_interval` are not eligible."""
        if max_per_run <= 0:
            return []
        now = resolve_now(now)
        return self._outcomes.select_retry_candidates(
            kind,
            attempted_before=now - min_interval,
            limit=max_per_run,
        )

    def sweep(
        self,
        kind: ArtifactKind,
        *,
        max_per_run: int,
        min_interval: timedelta,
        cancel: Optional[threading.Event] = None,
        should_stop=None,
        now: Optional[datetime] = None,
    ) -> SweepResult:
        now = resolve_now(now)
        result = SweepResult(kind=kind)
        candidates = self.select_candidates(kind, max_per_run=max_per_run, min_interval=min_interval, now=now)
        result.selected = len(candidates)

        for snapshot in candidates:
            if (cancel is not None and cancel.is_set()) or (should_stop is not None and should_stop()):
                result.cancelled = True
                break
            try:
                evaluation = self._fetcher.evaluate(kind, snapshot.artifact_id, now=now)
            except Exception:  # noqa: BLE001
                result.errors += 1
                logger.warning("retry failed kind=%s artifact=%s", kind.value, snapshot.artifact_id, exc_info=True)
                continue

            if not evaluation.changed:
                result.skipped += 1
            elif evaluation.succeeded:
                result.succeeded += 1
            elif evaluation.status == "temporary_failure":
                result.still_failing += 1
            else:
                result.terminal += 1

        return result
