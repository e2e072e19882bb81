"""Integration test fixtures for sshfleet.

These tests need a reachable sshd. They are skipped unless the environment
names one:

- SSHFLEET_TEST_HOST: host name or address (required)
- SSHFLEET_TEST_PORT: port (default 22)
- SSHFLEET_TEST_USER: login user (default: current user / ~/.ssh/config)

Authentication uses the usual agent and ~/.ssh keys.
"""

from __future__ import annotations

import os
from typing import Any

import pytest

from sshfleet.context import Context, context


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply integration marker and skip when no test host is configured."""
    skip = pytest.mark.skip(reason="SSHFLEET_TEST_HOST not set")
    for item in items:
        if "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
            if not os.getenv("SSHFLEET_TEST_HOST"):
                item.add_marker(skip)


@pytest.fixture
def host_options() -> dict[str, Any]:
    options: dict[str, Any] = {"port": int(os.getenv("SSHFLEET_TEST_PORT", "22")), "timeout": 10}
    if user := os.getenv("SSHFLEET_TEST_USER"):
        options["user"] = user
    return options


@pytest.fixture
def remote(host_options: dict[str, Any]) -> Context:
    """Context for the configured test host."""
    return context((os.environ["SSHFLEET_TEST_HOST"], host_options))
