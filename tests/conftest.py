"""Pytest configuration for test isolation.

Puts the workspace packages on ``sys.path`` (so tests run without an editable
install) and gives every test its own file-backed SQLite database. The shared
engine in ``ledger_db.client`` is a process-wide singleton bound to one URL,
so it is disposed before and after each test.
"""

# ruff: noqa: E402, I001
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
for _p in (_ROOT / "libs" / "db" / "src", _ROOT / "packages", _ROOT):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from ledger_db.client import reset_engine

from tests.helpers.db import bootstrap_sqlite_db

_LEDGER_ENV = (
    "DATABASE_URL",
    "OPENAI_API_KEY",
    "FISCAL_LEDGER_DEEP_MODEL",
    "PLAID_CLIENT_ID",
    "PLAID_SECRET",
    "PLAID_ENV",
    "PLAID_BASE_URL",
    "PLAID_WEBHOOK_URL",
    "FISCAL_LEDGER_PAGE_SIZE",
    "FISCAL_LEDGER_BATCH_SIZE",
    "FISCAL_LEDGER_DRY_RUN",
    "FISCAL_LEDGER_REMOVED_POLICY",
    "FISCAL_LEDGER_RULE_PUBLISHERS",
    "FISCAL_LEDGER_CONCURRENCY",
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop ledger settings inherited from the developer's shell or ``.env``."""

    for name in _LEDGER_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_engine()
    yield
    reset_engine()


@pytest.fixture()
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """A fresh SQLite database with the full schema; also exported as DATABASE_URL."""

    url = bootstrap_sqlite_db(tmp_path / "ledger.sqlite3")
    monkeypatch.setenv("DATABASE_URL", url)
    return url


@pytest.fixture()
def session_factory(database_url: str):
    from ledger_db.client import get_session_factory

    return get_session_factory(database_url=database_url)


@pytest.fixture()
def session(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def chdir_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run from an empty directory so the CLI does not pick up a stray ``.env``."""

    monkeypatch.chdir(tmp_path)
    return Path(os.getcwd())
