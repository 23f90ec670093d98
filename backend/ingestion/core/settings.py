"""Job options loaded from YAML.

Every value has a default; `ingestion/config/jobs.yaml` (or the file named by
RIFT_JOBS_YAML) overrides per section. Unknown keys and out-of-range values
fail at load time rather than mid-run.
"""
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ingestion.core.backfill_planner import PriorityTier, TierBudgets
from ingestion.core.errors import SettingsError

JOBS_YAML_ENV = "RIFT_JOBS_YAML"
DEFAULT_JOBS_YAML = Path(__file__).resolve().parents[1] / "config" / "jobs.yaml"


class _Options(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TierPages(_Options):
    ranked_pages: int = Field(ge=0)
    all_modes_head_pages: int = Field(ge=0)
    non_ranked_backfill_pages: int = Field(ge=0)

    def budgets(self) -> TierBudgets:
        return TierBudgets(
            ranked_pages=self.ranked_pages,
            all_head_pages=self.all_modes_head_pages,
            nonranked_pages=self.non_ranked_backfill_pages,
        )


class MatchIngestionOptions(_Options):
    page_size: int = Field(default=20, ge=1, le=100)
    high: TierPages = TierPages(ranked_pages=2, all_modes_head_pages=2, non_ranked_backfill_pages=40)
    low: TierPages = TierPages(ranked_pages=1, all_modes_head_pages=1, non_ranked_backfill_pages=4)
    max_unfetched_per_run: int = Field(default=40, ge=0)
    noop_runs_before_skip: int = Field(default=5, ge=1)
    max_retry_attempts: int = Field(default=5, ge=1)
    retention_days: int = Field(default=730, ge=1)

    def budgets(self, tier: PriorityTier) -> TierBudgets:
        return (self.high if tier is PriorityTier.HIGH else self.low).budgets()


class ProfileRefreshOptions(_Options):
    lock_minutes: int = Field(default=10, ge=1)
    priority_lock_minutes: int = Field(default=5, ge=1)

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(minutes=self.lock_minutes)

    @property
    def priority_lock_ttl(self) -> timedelta:
        return timedelta(minutes=self.priority_lock_minutes)


class CandidateJobOptions(_Options):
    """Shared shape of jobs that pick stale entities and work on a few of them."""

    max_candidate_entities_per_run: int = Field(default=60, ge=0)
    max_jobs_per_run: int = Field(default=4, ge=0)
    data_stale_after_minutes: int = Field(default=90, ge=1)
    lock_minutes: int = Field(default=10, ge=1)
    prioritize_favorites: bool = True
    pause_when_api_priority_refresh_active: bool = True

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(minutes=self.lock_minutes)

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.data_stale_after_minutes)


class MaintenanceOptions(CandidateJobOptions):
    pass


class AnalyticsPrewarmOptions(CandidateJobOptions):
    max_candidate_entities_per_run: int = Field(default=30, ge=0)
    max_jobs_per_run: int = Field(default=2, ge=0)
    data_stale_after_minutes: int = Field(default=180, ge=1)
    pause_when_api_priority_refresh_active: bool = False
    minimum_successful_matches: int = Field(default=200, ge=0)
    coverage_window_hours: int = Field(default=336, ge=1)


class TimelineIngestionOptions(_Options):
    enabled: bool = True
    max_retry_attempts: int = Field(default=4, ge=1)
    backfill_batch_size: int = Field(default=100, ge=1)
    backfill_max_enqueues_per_run: int = Field(default=50, ge=0)
    pause_when_api_priority_refresh_active: bool = True


class LivePollOptions(_Options):
    max_tracked_entities_per_run: int = Field(default=30, ge=0)
    max_requests_per_run: int = Field(default=30, ge=0)
    poll_only_favorites: bool = True
    pause_when_api_priority_refresh_active: bool = True


class RetryFailedOptions(_Options):
    max_per_run: int = Field(default=20, ge=0)
    minimum_minutes_since_last_attempt: int = Field(default=15, ge=1)
    include_timelines: bool = True

    @property
    def min_interval(self) -> timedelta:
        return timedelta(minutes=self.minimum_minutes_since_last_attempt)


class JobSettings(_Options):
    match_ingestion: MatchIngestionOptions = MatchIngestionOptions()
    profile_refresh: ProfileRefreshOptions = ProfileRefreshOptions()
    maintenance: MaintenanceOptions = MaintenanceOptions()
    timeline_ingestion: TimelineIngestionOptions = TimelineIngestionOptions()
    analytics_prewarm: AnalyticsPrewarmOptions = AnalyticsPrewarmOptions()
    live_poll: LivePollOptions = LivePollOptions()
    retry_failed: RetryFailedOptions = RetryFailedOptions()


def settings_from_mapping(raw: Optional[Mapping[str, Any]]) -> JobSettings:
    if raw is None:
        return JobSettings()
    if not isinstance(raw, Mapping):
        raise SettingsError("Invalid jobs config: expected a top-level mapping of job sections.")
    try:
        return JobSettings.model_validate(dict(raw))
    except ValidationError as exc:
        raise SettingsError(f"Invalid jobs config: {exc}") from exc


def load_job_settings(path: Optional[Path] = None) -> JobSettings:
    """Load settings from `path`, RIFT_JOBS_YAML, or the bundled defaults file."""
    if path is None:
        env_path = os.environ.get(JOBS_YAML_ENV)
        path = Path(env_path) if env_path else DEFAULT_JOBS_YAML
    if not path.is_file():
        raise SettingsError(f"Jobs config not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise SettingsError(f"Jobs config is not valid YAML: {path}") from exc
    return settings_from_mapping(raw)
