from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator


ENV_FILE_ENV = "RIFT_ENV_FILE"


def _parse_env_line(line: str) -> tuple[str, str] | None:
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    if line.startswith("export "):
        line = line[len("export "):]
    if "=" not in line:
        return None
    key, value = line.split("=", 1)
    key = key.strip()
    value = value.strip()
    if not key:
        return None
    # KEY="value" or KEY='value'
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def _candidate_files() -> Iterator[Path]:
    explicit = os.environ.get(ENV_FILE_ENV)
    if explicit:
        yield Path(explicit)
        return
    # backend/app/core/env.py -> backend/app/core -> backend/app -> backend -> repo root
    repo_root = Path(__file__).resolve().parents[3]
    yield repo_root / ".env"
    yield repo_root / "backend" / ".env"


def load_env_if_present(*, override: bool = False) -> None:
    """Load .env files into the process environment.

    - `RIFT_ENV_FILE` names a single file; otherwise repo root `.env` then
      `backend/.env` are read, in that order.
    - Existing variables win unless override=True.
    """

    for p in _candidate_files():
        if not p.is_file():
            continue
        try:
            content = p.read_text(encoding="utf-8")
        except OSError:
            continue
        for raw in content.splitlines():
            parsed = _parse_env_line(raw)
            if not parsed:
                continue
            k, v = parsed
            if not override and k in os.environ:
                continue
            os.environ[k] = v
