import sys
from pathlib import Path

import pytest


# Ensure blueswitch-api and the adapter package are importable without installing.
BLUESWITCH_API_DIR = Path(__file__).resolve().parents[1]
ADAPTERS_DIR = BLUESWITCH_API_DIR.parent / "capability-adapters"
for path in (BLUESWITCH_API_DIR, ADAPTERS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def make_harness(tmp_path, anyio_backend):
    from harness import Harness

    created = []

    def _make(**options):
        harness = Harness(tmp_path, **options)
        created.append(harness)
        return harness

    yield _make
    for harness in created:
        await harness.orchestrator.shutdown()
