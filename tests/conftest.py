"""Shared test fixtures and configuration."""

from __future__ import annotations

import pytest

from foundry_proxy.poller import PollingPolicy, RunPoller
from foundry_proxy.session import ConversationSessionManager
from tests.helpers import FakeAgentClient, make_settings


@pytest.fixture
def settings():
    """Settings with fast polling so tests finish quickly."""
    return make_settings()


@pytest.fixture
def fake_client():
    return FakeAgentClient()


@pytest.fixture
def fast_policy():
    return PollingPolicy(initial_interval=0.01, max_interval=0.02, backoff_factor=1.5, deadline=1.0)


@pytest.fixture
def session_manager(fake_client, fast_policy):
    return ConversationSessionManager(fake_client, RunPoller(fake_client, fast_policy))
