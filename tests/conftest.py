"""Pytest configuration and fixtures."""

import pytest

from encounterscope.pipeline import (
    ChunkProcessor,
    PendingReconciler,
    SessionManager,
    SessionManagerConfig,
)
from encounterscope.storage import close_db, create_engine, create_session_factory, init_db


@pytest.fixture
async def db_engine(tmp_path):
    """SQLite database file with the full schema."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'encounterscope.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return create_session_factory(db_engine)


@pytest.fixture
def build_manager(session_factory):
    """Build a SessionManager around a gateway with fast retries."""

    def build(gateway, chunk_size: int = 50, max_attempts: int = 3) -> SessionManager:
        processor = ChunkProcessor(gateway, session_factory)
        reconciler = PendingReconciler(session_factory, concurrency=1)
        config = SessionManagerConfig(
            chunk_size=chunk_size,
            max_chunk_attempts=max_attempts,
            retry_base_delay=0,
            retry_max_delay=0,
        )
        return SessionManager(session_factory, processor, reconciler, config)

    return build
