"""Shared fixtures for the aiovoicemesh tests."""

from __future__ import annotations

import pytest

from tests.fakes import ConnectionRecorder, FakeCapture, FakeScheduler, FakeSink


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def connections() -> ConnectionRecorder:
    return ConnectionRecorder()


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture(autouse=True)
def _reset_sinks() -> None:
    FakeSink.instances.clear()
