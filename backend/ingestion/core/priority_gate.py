"""Cooperative backpressure between interactive and background work.

An interactive refresh takes a short lease under the reserved priority prefix.
While any such lease is live, pausable jobs skip their provider calls for the
invocation. This is a convention, not a quota: nothing stops a non-pausable job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ingestion.core.lease import LeaseRepository
from ingestion.core.identifiers import PRIORITY_REFRESH_PREFIX, entity_refresh_key, priority_refresh_key
from ingestion.core.time_common import resolve_now

logger = logging.getLogger(__name__)


class PriorityGate:
    def __init__(self, leases: LeaseRepository, prefix: str = PRIORITY_REFRESH_PREFIX):
        self._leases = leases
        self._prefix = prefix

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self._leases.any_active_with_prefix(self._prefix, now=now)

    def should_pause(self, pausable: bool, now: Optional[datetime] = None) -> bool:
        if not pausable:
            return False
        active = self.is_active(now)
        if active:
            logger.info("priority refresh active; pausing background provider work")
        return active


@dataclass(frozen=True, slots=True)
class PriorityRefreshTicket:
    entity_key: str
    priority_key: str
    acquired: bool
    retry_after_seconds: float = 0.0


def request_priority_refresh(
    leases: LeaseRepository,
    platform: str,
    entity_id: str,
    *,
    entity_ttl: timedelta,
    priority_ttl: timedelta,
    now: Optional[datetime] = None,
) -> PriorityRefreshTicket:
    """Interactive trigger: take the entity lease, then raise the priority flag.

    When the entity is already being refreshed nothing is taken and the ticket
    reports how long the caller should wait. The returned keys are handed to the
    refresh job, which releases both when it finishes.
    """
    now = resolve_now(now)
    entity_key = entity_refresh_key(platform, entity_id)
    priority_key = priority_refresh_key(platform, entity_id)

    if not leases.try_acquire(entity_key, entity_ttl, now=now):
        return PriorityRefreshTicket(
            entity_key=entity_key,
            priority_key=priority_key,
            acquired=False,
            retry_after_seconds=leases.seconds_remaining(entity_key, now=now),
        )

    # Only one caller can hold the entity lease, so a busy priority key here is
    # a stale flag from an earlier request that has not yet expired.
    if not leases.try_acquire(priority_key, priority_ttl, now=now):
        logger.info("priority flag already raised key=%s", priority_key)

    return PriorityRefreshTicket(entity_key=entity_key, priority_key=priority_key, acquired=True)
