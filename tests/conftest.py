"""Pytest fixtures for moltguard tests."""

import pytest

from moltguard.validation import (
    MemoryAuditSink,
    PolicyConfig,
    SignatureRegistry,
    ValidationPipeline,
    default_registry,
)

TEST_MARKER_KEY = b"test-marker-key-for-unit-tests-0"


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Clear settings cache before each test."""
    from moltguard.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def policy() -> PolicyConfig:
    """Default policy value."""
    return PolicyConfig()


@pytest.fixture(scope="session")
def registry() -> SignatureRegistry:
    """The built-in signature registry."""
    return default_registry()


@pytest.fixture
def sink() -> MemoryAuditSink:
    """In-memory audit sink."""
    return MemoryAuditSink()


@pytest.fixture
def marker_key() -> bytes:
    """Fixed key for untrusted-content envelopes."""
    return TEST_MARKER_KEY


@pytest.fixture
def pipeline(
    policy: PolicyConfig,
    registry: SignatureRegistry,
    sink: MemoryAuditSink,
    marker_key: bytes,
) -> ValidationPipeline:
    """Pipeline wired to the built-in registry and an in-memory sink."""
    return ValidationPipeline(policy, registry, sink=sink, marker_key=marker_key)
