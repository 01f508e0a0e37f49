"""Pytest configuration for test isolation.

Makes the workspace sources importable (``packages/`` for ``ledger_pipeline``
and ``libs/db/src`` for ``db``) and gives every test that asks for it a fresh
file-backed SQLite database. Cached engines are disposed after each test so
no connection outlives its temporary directory.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
# Ensure workspace sources precede any installed copies on sys.path.
sys.path[:0] = [
    p
    for p in [str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT)]
    if p not in sys.path
]

from db.client import dispose_engines  # noqa: E402
from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402


@pytest.fixture()
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """URL of a freshly created ledger database, also exported as DATABASE_URL."""

    url = bootstrap_sqlite_db(tmp_path / "ledger.sqlite3")
    monkeypatch.setenv("DATABASE_URL", url)
    return url


@pytest.fixture(autouse=True)
def _isolate_ledger_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep host environment knobs from leaking into tests."""

    for name in (
        "LEDGER_PENDING_TTL_HOURS",
        "LEDGER_SWEEP_WORKERS",
        "LEDGER_DEFAULT_CURRENCY",
        "LEDGER_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    dispose_engines()
