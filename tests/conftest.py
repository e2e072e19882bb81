"""Shared test fixtures for sshfleet tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest
import structlog

from sshfleet.transport import RecordingTransport


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Undo configure_logging() calls so tests do not leak handlers."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def recording_transport() -> RecordingTransport:
    """A transport that records calls and answers every exec with exit status 0."""
    return RecordingTransport()
