"""
Shared pytest fixtures for the dualstore tests.

This module provides:
- Record factory fixtures (log_factory, payment_factory)
- In-memory stores for both record classes
- Phase controllers, routers and a fast RetryConfig (no sleeping)
- A SQLite-backed SQLAlchemy engine (aiosqlite, shared in-memory database)

Plain helpers live in ``tests.factories`` so test modules can import them.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from dualstore.codec import RecordCodec
from dualstore.exceptions import RetryConfig
from dualstore.phase import PhaseController
from dualstore.records import LogRecord, PaymentRecord, RecordClass
from dualstore.repositories.phase import InMemoryPhaseStateRepository
from dualstore.router import HybridRouter
from dualstore.schema import create_schema
from dualstore.stores.memory import InMemoryRecordStore
from tests.factories import build_controller, make_log, make_payment


@pytest.fixture
def log_factory() -> Callable[..., LogRecord]:
    return make_log


@pytest.fixture
def payment_factory() -> Callable[..., PaymentRecord]:
    return make_payment


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Three attempts without any delay."""
    return RetryConfig(max_attempts=3, base_delay_ms=0, max_delay_ms=0)


# ============================================================================
# Stores and codecs
# ============================================================================


@pytest.fixture
def log_codec() -> RecordCodec:
    return RecordCodec(RecordClass.INTEGRATION_LOGS)


@pytest.fixture
def payment_codec() -> RecordCodec:
    return RecordCodec(RecordClass.PAYMENTS)


@pytest.fixture
def source_store() -> InMemoryRecordStore:
    return InMemoryRecordStore("source", RecordClass.INTEGRATION_LOGS)


@pytest.fixture
def target_store() -> InMemoryRecordStore:
    return InMemoryRecordStore("target", RecordClass.INTEGRATION_LOGS)


@pytest.fixture
def payment_source() -> InMemoryRecordStore:
    return InMemoryRecordStore("source", RecordClass.PAYMENTS)


@pytest.fixture
def payment_target() -> InMemoryRecordStore:
    return InMemoryRecordStore("target", RecordClass.PAYMENTS)


# ============================================================================
# Phase and routing
# ============================================================================


@pytest.fixture
def phase_repo() -> InMemoryPhaseStateRepository:
    return InMemoryPhaseStateRepository()


@pytest.fixture
def controller(phase_repo: InMemoryPhaseStateRepository) -> PhaseController:
    return build_controller(RecordClass.INTEGRATION_LOGS, repository=phase_repo)


@pytest.fixture
def router(
    controller: PhaseController,
    source_store: InMemoryRecordStore,
    target_store: InMemoryRecordStore,
    fast_retry: RetryConfig,
) -> HybridRouter:
    return HybridRouter(
        controller,
        source_store,
        target_store,
        retry_config=fast_retry,
        enable_tracing=False,
    )


# ============================================================================
# SQLite
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite database with every dualstore table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()
