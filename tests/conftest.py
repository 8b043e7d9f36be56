"""Shared fixtures."""

import pytest

from tests.fakes import FakeCapabilityClient


@pytest.fixture
def fake_clients():
    return {
        "files": FakeCapabilityClient(tools=["read", "write"]),
        "web-search": FakeCapabilityClient(tools=["search"]),
    }
