"""
Pytest configuration and shared fixtures for the indexer

This module provides shared fixtures for:
- In-memory SQLite storage
- Fake identity service and artwork renderer
- A fully wired reconciler
"""

import asyncio
import os
from typing import Dict, List, Optional, Set

import pytest

from berry_indexer.artwork import TraitMetricsCalculator
from berry_indexer.config import DatabaseConfig, DescriptorSource
from berry_indexer.database import DatabaseManager, EntityStore
from berry_indexer.descriptor_resolver import DescriptorResolver
from berry_indexer.identity_cache import IdentityCache
from berry_indexer.reconciler import Reconciler
from berry_indexer.types import Identity, IdentityLookupError

from factories import DESCRIPTOR_V2, DESCRIPTOR_V3, IMAGE_DATA


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    os.environ['LOG_LEVEL'] = 'DEBUG'


def pytest_collection_modifyitems(config, items):
    """Add markers automatically based on test names"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# ============================================================================
# Fakes
# ============================================================================

class FakeIdentityClient:
    """Identity service double that records calls and tracks concurrency"""

    def __init__(self, names: Optional[Dict[str, str]] = None, failing: Optional[Set[str]] = None,
                 delay: float = 0.0):
        self.names = {k.lower(): v for k, v in (names or {}).items()}
        self.failing = {a.lower() for a in (failing or set())}
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def lookup(self, address: str) -> Identity:
        self.calls.append(address)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if address in self.failing:
                raise IdentityLookupError(f"lookup failed for {address}")
            name = self.names.get(address)
            return Identity(name=name, avatar=f"https://avatars.test/{name}.png" if name else None)
        finally:
            self.in_flight -= 1


class FakeRenderer:
    """Artwork renderer double"""

    def __init__(self, svg: Optional[str] = "<svg>noun</svg>"):
        self.svg = svg
        self.calls = []

    async def render(self, source_id: str, seed) -> Optional[str]:
        self.calls.append((source_id, seed.as_tuple()))
        return self.svg


# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest.fixture
def db_manager():
    """Fresh in-memory SQLite database with all tables"""
    manager = DatabaseManager(DatabaseConfig(url="sqlite://"))
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def store(db_manager):
    return EntityStore(db_manager)


# ============================================================================
# Collaborator Fixtures
# ============================================================================

@pytest.fixture
def identity_client():
    return FakeIdentityClient(names={
        "0x" + "a1" * 20: "alice.eth",
        "0x" + "b2" * 20: "bob.eth",
        "0x" + "d4" * 20: "settler.eth",
    })


@pytest.fixture
def identity_cache(identity_client):
    return IdentityCache(identity_client)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def descriptor_resolver():
    return DescriptorResolver([
        DescriptorSource(address=DESCRIPTOR_V2, start_block=12000000),
        DescriptorSource(address=DESCRIPTOR_V3, start_block=20059934),
    ])


@pytest.fixture
def metrics_calculator():
    return TraitMetricsCalculator(IMAGE_DATA)


@pytest.fixture
def reconciler(store, identity_cache, descriptor_resolver, metrics_calculator, renderer):
    return Reconciler(
        store=store,
        identity_cache=identity_cache,
        descriptor_resolver=descriptor_resolver,
        metrics_calculator=metrics_calculator,
        renderer=renderer
    )
