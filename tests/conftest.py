from __future__ import annotations

import pytest

from camtx.utils import gst as gst_utils
from gst_fakes import FakeGst


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_gst(monkeypatch) -> FakeGst:
    fake = FakeGst()
    monkeypatch.setattr(gst_utils, "Gst", fake)
    monkeypatch.setattr(gst_utils, "_GST_INITIALISED", True)
    return fake


@pytest.fixture
def no_gst(monkeypatch) -> None:
    monkeypatch.setattr(gst_utils, "Gst", None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
