from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/app` is importable as top-level `app` for tests.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.base import Base  # noqa: E402
from app.core.db import make_session_factory  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
import app.models  # noqa: E402,F401


def _db_url() -> str | None:
    load_env_if_present()
    url = os.environ.get("DATABASE_URL")
    # Only PostgreSQL URLs are migrated and truncated by the suite.
    if url and url.startswith("postgresql"):
        return url
    return None


def _alembic_config(db_url: str) -> Config:
    cfg = Config(str(ROOT / "backend" / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "backend" / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


@pytest.fixture(scope="session")
def pg_engine() -> Generator[Optional[Engine], None, None]:
    """PostgreSQL migrated to head when DATABASE_URL is set, else None."""
    url = _db_url()
    if not url:
        yield None
        return
    command.upgrade(_alembic_config(url), "head")
    eng = create_engine(url, future=True)
    yield eng
    eng.dispose()


@pytest.fixture()
def engine(pg_engine: Optional[Engine], tmp_path: Path) -> Generator[Engine, None, None]:
    """Empty coordination schema per test.

    Repositories commit per operation, so isolation is by emptying tables
    (PostgreSQL) or by a fresh database file (SQLite), not by rollback.
    """
    if pg_engine is not None:
        with pg_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())
        yield pg_engine
        return

    eng = create_engine(
        f"sqlite:///{tmp_path / 'rift.db'}",
        future=True,
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    return make_session_factory(engine)


@pytest.fixture()
def db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
