"""Shared fixtures: a quiet, fast harness wired to a QueueSink."""

import pytest

from harness.settings import Settings
from harness.sink import QueueSink
from sockharness import Harness


@pytest.fixture
def settings() -> Settings:
    return Settings(recv_timeout=0.05, tcp_poll_interval=0.005, debug=False)


@pytest.fixture
def sink() -> QueueSink:
    return QueueSink()


@pytest.fixture
def harness(sink, settings):
    h = Harness(sink, settings)
    yield h
    h.shutdown()
