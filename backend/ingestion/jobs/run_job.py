from __future__ import annotations

"""Run one job entry point once. The external scheduler calls this.

Run:
  python ingestion/jobs/run_job.py run_maintenance
  python ingestion/jobs/run_job.py refresh_entity --param platform=EUW1 --param entity_id=abc123
  python ingestion/jobs/run_job.py priority_refresh --param platform=EUW1 --param entity_id=abc123
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.db import SessionLocal  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
from ingestion.core.errors import InvalidIdentifierError, SettingsError  # noqa: E402
from ingestion.core.lease import LeaseRepository  # noqa: E402
from ingestion.core.network_client import HttpProviderClient  # noqa: E402
from ingestion.core.priority_gate import request_priority_refresh  # noqa: E402
from ingestion.core.settings import load_job_settings  # noqa: E402
from ingestion.jobs.context import JobContext  # noqa: E402
from ingestion.jobs.invocation import JobOutcome  # noqa: E402
from ingestion.jobs.registry import ENTRY_POINTS, InlineEnqueuer, run_entry_point  # noqa: E402


logger = logging.getLogger("rift.jobs")
logger.setLevel(logging.INFO)

# Ensure logs are visible when run from cron / console.
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

PRIORITY_REFRESH = "priority_refresh"


def _parse_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(raw)
    except ValueError:
        return raw


def parse_params(pairs: list[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"--param expects key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        params[key.strip()] = _parse_value(value.strip())
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one ingestion job entry point.")
    parser.add_argument("job", choices=sorted([*ENTRY_POINTS, PRIORITY_REFRESH]))
    parser.add_argument("--param", action="append", default=[], help="key=value passed to the entry point")
    parser.add_argument("--jobs-yaml", type=Path, default=None, help="override job settings file")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_env_if_present()

    try:
        settings = load_job_settings(args.jobs_yaml)
        params = parse_params(args.param)
    except (SettingsError, ValueError) as exc:
        logger.error(json.dumps({"event": "job_config_error", "job_name": args.job, "error": str(exc)}))
        return 2

    if args.job == PRIORITY_REFRESH:
        # Interactive trigger: raise the priority flag, then refresh at high priority.
        try:
            ticket = request_priority_refresh(
                LeaseRepository(SessionLocal),
                str(params.get("platform", "")),
                str(params.get("entity_id", "")),
                entity_ttl=settings.profile_refresh.lock_ttl,
                priority_ttl=settings.profile_refresh.priority_lock_ttl,
            )
        except InvalidIdentifierError as exc:
            logger.error(json.dumps({"event": "job_config_error", "job_name": args.job, "error": str(exc)}))
            return 2
        if not ticket.acquired:
            logger.info(json.dumps({
                "event": "priority_refresh_busy",
                "entity_key": ticket.entity_key,
                "retry_after_seconds": round(ticket.retry_after_seconds, 1),
            }))
            return 0
        job_name = "refresh_entity"
        params.update(lease_held=True, priority_key=ticket.priority_key)
    else:
        job_name = args.job

    enqueuer = InlineEnqueuer()
    with HttpProviderClient.from_env() as provider:
        ctx = JobContext(
            session_factory=SessionLocal,
            provider=provider,
            settings=settings,
            enqueuer=enqueuer,
        )
        enqueuer.bind(ctx)
        signal.signal(signal.SIGTERM, lambda *_: ctx.cancel.set())
        report = run_entry_point(job_name, ctx, **params)

    return 1 if report.outcome is JobOutcome.FAILED else 0


if __name__ == "__main__":
    raise SystemExit(main())
