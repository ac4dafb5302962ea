from __future__ import annotations

import pytest

from builders import FakeTransport


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
