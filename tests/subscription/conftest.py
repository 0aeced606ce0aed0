"""Shared fixtures for subscription tests (memory backends)."""

import pytest

from tiergate.subscription.resources import MemoryResourceSource
from tiergate.subscription.storage import MemorySubscriptionStore
from tiergate.subscription.system import SubscriptionSystem


@pytest.fixture
def memory_store():
    """Create a memory-based subscription store for testing."""
    return MemorySubscriptionStore()


@pytest.fixture
def resources():
    """Create in-memory resource tables for testing."""
    return MemoryResourceSource()


@pytest.fixture
def system(memory_store, resources):
    """Assemble the subscription core over memory backends."""
    return SubscriptionSystem(memory_store, resources)


@pytest.fixture
def subscriptions(system):
    return system.subscriptions


@pytest.fixture
def tracking(system):
    return system.tracking


@pytest.fixture
def enforcement(system):
    return system.enforcement


@pytest.fixture
def calculator(system):
    return system.calculator
