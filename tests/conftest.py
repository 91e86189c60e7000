from __future__ import annotations

import pytest
from fakes import FakeClient, FakeClock


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
