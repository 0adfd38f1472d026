from __future__ import annotations

import pytest

from tests.fakes import SentinelHarness, build_harness


@pytest.fixture
def harness() -> SentinelHarness:
    return build_harness()
