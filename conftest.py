from __future__ import annotations

import pytest


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, *, ms: int = 0, minutes: int = 0) -> None:
        self.now_ms += ms + minutes * 60 * 1000


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
