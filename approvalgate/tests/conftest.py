from __future__ import annotations

import os
import tempfile
from typing import AsyncIterator, Iterator


# Point settings at a throwaway SQLite file before any approvalgate module builds the engine.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="approvalgate-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "APPROVALGATE_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{_TEST_DB_DIR}/approvalgate-test.db",
)
os.environ.setdefault("INTERNAL_API_TOKEN", "test-internal-token")
# The ASGI test transport connects from 127.0.0.1; treat it as the edge proxy.
os.environ.setdefault("TRUSTED_PROXIES", "127.0.0.1")
# Burst buckets need Redis; tests inject a throttle where they exercise it.
os.environ.setdefault("BURST_LIMIT_ENABLED", "false")

import pytest  # noqa: E402

from approvalgate.core.config import get_settings  # noqa: E402
from approvalgate.domain.models import Base  # noqa: E402
from approvalgate.persistence.db import engine  # noqa: E402
from approvalgate.services.security.gate import set_gate  # noqa: E402
from approvalgate.services.security.throttle import reset_throttle_state  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_tables_between_tests() -> AsyncIterator[None]:
    # Every test starts from empty tables; the engine is disposed so no connection crosses loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> Iterator[None]:
    # Settings, the process gate and Redis handles are module singletons.
    get_settings.cache_clear()
    reset_throttle_state()
    set_gate(None)
    yield
    get_settings.cache_clear()
    reset_throttle_state()
    set_gate(None)
