"""Pytest configuration and fixtures."""

import logging
import random

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import ControllerConfig
from controller import Controller
from helpers import FakeDatabase
from plugins.registry import PluginRegistry, register_builtin_plugins


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def fake_db():
    """In-memory database manager."""
    return FakeDatabase()


@pytest.fixture
def registry():
    """A registry with the built-in auth strategies and memory provider."""
    registry = PluginRegistry()
    register_builtin_plugins(registry)
    return registry


@pytest.fixture
def controller_config():
    """Controller configuration with short, deterministic timings."""
    return ControllerConfig(
        reconcile_interval=1,
        max_concurrent_reconciles=2,
        backoff_base_delay=10,
        backoff_max_delay=300,
        backoff_jitter_factor=0.0,
        store_error_delay=600,
        write_conflict_retries=2,
        fetch_timeout=1,
        reconcile_deadline=5,
        default_refresh_interval=3600,
    )


@pytest.fixture
def controller(fake_db, registry, controller_config):
    """Controller wired to the in-memory database."""
    return Controller(
        fake_db,
        registry=registry,
        config=controller_config,
        logger=logging.getLogger("secretsync.test"),
        rng=random.Random(0),
    )


@pytest.fixture
def sample_external_secret():
    """Sample external secret row for testing."""
    return {
        "namespace": "default",
        "name": "app-secret",
        "spec": {
            "secretStoreRef": {"name": "memory-store", "kind": "SecretStore"},
            "target": {"name": "app-credentials"},
            "refreshInterval": "1h",
            "data": [
                {
                    "secretKey": "password",
                    "remoteRef": {"key": "db", "property": "password"},
                }
            ],
        },
        "generation": 1,
        "observed_generation": 0,
        "status": "pending",
        "status_message": None,
        "conditions": [],
        "retry_count": 0,
        "refresh_time": None,
        "last_reconcile_time": None,
        "next_reconcile_time": None,
    }
