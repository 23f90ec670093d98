"""Backfill planner: walk an entity's history backwards within a page budget.

The caller holds the entity lease. Each page of ids is registered as
`unfetched` outcomes before the next page is requested, so a run interrupted
at any point leaves only whole pages behind. The cursor is written once, at the
end of the run, with a version check.

Stop conditions, first one wins: page budget spent, provider reports end of
history, a page contributes no new ids, the stop predicate fires (priority
gate), or the cancellation event is set.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ingestion.core.cursor import Cursor, CursorStore, IngestionScope, advance_cursor
from ingestion.core.errors import ProviderError
from ingestion.core.fetch_outcome import ArtifactKind, OutcomeStore
from ingestion.core.identifiers import normalize_entity_id
from ingestion.core.provider import ProviderClient
from ingestion.core.time_common import resolve_now

logger = logging.getLogger(__name__)

SCOPE_ORDER = (IngestionScope.RANKED, IngestionScope.ALL_HEAD, IngestionScope.NONRANKED)


class PriorityTier(str, Enum):
    HIGH = "high"  # interactive refresh
    LOW = "low"    # background maintenance


@dataclass(frozen=True, slots=True)
class TierBudgets:
    ranked_pages: int
    all_head_pages: int
    nonranked_pages: int

    def pages_for(self, scope: IngestionScope) -> int:
        if scope is IngestionScope.RANKED:
            return self.ranked_pages
        if scope is IngestionScope.ALL_HEAD:
            return self.all_head_pages
        return self.nonranked_pages


class StopReason(str, Enum):
    BUDGET_EXHAUSTED = "budget_exhausted"
    END_OF_HISTORY = "end_of_history"
    NO_NEW_ARTIFACTS = "no_new_artifacts"
    PRIORITY_PAUSE = "priority_pause"
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"
    SKIPPED_EXHAUSTED = "skipped_exhausted"
    NO_BUDGET = "no_budget"


@dataclass(frozen=True, slots=True)
class PlanResult:
    entity_id: str
    scope: IngestionScope
    pages_fetched: int
    new_artifact_ids: tuple[str, ...]
    oldest_epoch: Optional[int]
    stop_reason: StopReason
    cursor: Cursor
    cursor_written: bool

    @property
    def interrupted(self) -> bool:
        return self.stop_reason in (StopReason.PRIORITY_PAUSE, StopReason.CANCELLED)


class BackfillPlanner:
    def __init__(
        self,
        provider: ProviderClient,
        cursors: CursorStore,
        outcomes: OutcomeStore,
        *,
        page_size: int,
        should_stop: Optional[Callable[[], bool]] = None,
        cancel: Optional[threading.Event] = None,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._provider = provider
        self._cursors = cursors
        self._outcomes = outcomes
        self._page_size = page_size
        self._should_stop = should_stop or (lambda: False)
        self._cancel = cancel or threading.Event()

    def run_scope(
        self,
        entity_id: str,
        scope: IngestionScope,
        page_budget: int,
        *,
        noop_skip_threshold: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> PlanResult:
        entity_id = normalize_entity_id(entity_id)
        now = resolve_now(now)
        cursor = self._cursors.load(entity_id, scope)

        def _result(pages: int, new_ids: list[str], oldest: Optional[int], reason: StopReason,
                    final: Cursor, written: bool) -> PlanResult:
            return PlanResult(
                entity_id=entity_id,
                scope=scope,
                pages_fetched=pages,
                new_artifact_ids=tuple(new_ids),
                oldest_epoch=oldest,
                stop_reason=reason,
                cursor=final,
                cursor_written=written,
            )

        if page_budget <= 0:
            return _result(0, [], None, StopReason.NO_BUDGET, cursor, False)
        if (
            noop_skip_threshold is not None
            and scope.is_backfill
            and cursor.consecutive_noop_runs >= noop_skip_threshold
        ):
            return _result(0, [], None, StopReason.SKIPPED_EXHAUSTED, cursor, False)

        before = cursor.backfill_before_epoch if scope.is_backfill else None
        new_ids: list[str] = []
        oldest: Optional[int] = None
        pages = 0
        reason = StopReason.BUDGET_EXHAUSTED

        for page in range(page_budget):
            if self._cancel.is_set():
                reason = StopReason.CANCELLED
                break
            if self._should_stop():
                reason = StopReason.PRIORITY_PAUSE
                break
            try:
                id_page = self._provider.list_artifact_ids_before(
                    entity_id,
                    before,
                    page,
                    page_size=self._page_size,
                    queue_family=scope.queue_family,
                )
            except ProviderError as exc:
                logger.warning("id listing failed entity=%s scope=%s page=%s: %s", entity_id, scope.value, page, exc)
                reason = StopReason.PROVIDER_ERROR
                break

            pages += 1
            inserted = self._outcomes.register_unfetched(
                ArtifactKind.MATCH,
                id_page.refs,
                entity_id=entity_id,
                queue_family=scope.queue_family,
                now=now,
            )
            new_ids.extend(inserted)
            page_oldest = id_page.oldest_epoch()
            if page_oldest is not None:
                oldest = page_oldest if oldest is None else min(oldest, page_oldest)

            logger.debug(
                "page entity=%s scope=%s page=%s ids=%s new=%s",
                entity_id, scope.value, page, len(id_page.refs), len(inserted),
            )
            if id_page.end_of_history:
                reason = StopReason.END_OF_HISTORY
                break
            if not inserted:
                reason = StopReason.NO_NEW_ARTIFACTS
                break

        # A run that never completed a page, or failed without finding anything,
        # is not a run: the cursor stays as it was.
        if pages == 0 or (reason is StopReason.PROVIDER_ERROR and not new_ids):
            return _result(pages, new_ids, oldest, reason, cursor, False)

        updated = advance_cursor(cursor, new_artifacts=len(new_ids), oldest_epoch=oldest, now=now)
        written = self._cursors.save(cursor, updated)
        return _result(pages, new_ids, oldest, reason, updated if written else cursor, written)

    def plan_entity(
        self,
        entity_id: str,
        budgets: TierBudgets,
        *,
        noop_skip_threshold: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[PlanResult]:
        """Run every scope in order; an interrupted scope ends the entity's run."""
        results: list[PlanResult] = []
        for scope in SCOPE_ORDER:
            result = self.run_scope(
                entity_id,
                scope,
                budgets.pages_for(scope),
                noop_skip_threshold=noop_skip_threshold,
                now=now,
            )
            results.append(result)
            if result.interrupted:
                break
        return results
