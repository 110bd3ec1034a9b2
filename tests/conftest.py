from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packbattle.db import Database  # noqa: E402


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'packbattle.sqlite3'}"


@pytest.fixture
def run_db(db_url):
    """Run ``fn(database)`` on a fresh event loop against the test database."""

    def _run(fn):
        async def _main():
            database = Database(db_url).open()
            try:
                await database.create_tables()
                return await fn(database)
            finally:
                await database.close()

        return asyncio.run(_main())

    return _run
