"""Storage layer for EncounterScope.

Provides database access via async SQLAlchemy (PostgreSQL in production,
SQLite for tests).
"""

from .database import (
    Base,
    close_db,
    create_engine,
    create_session_factory,
    get_session,
    init_db,
)
from .orm_models import (
    CascadeChainORM,
    ChunkResultORM,
    FinalEncounterORM,
    PendingEncounterORM,
    SessionORM,
)
from .repositories import (
    CascadeRepository,
    ChunkResultRepository,
    FinalEncounterRepository,
    PendingRepository,
    SessionRepository,
)

__all__ = [
    # Database
    "Base",
    "create_engine",
    "create_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # ORM Models
    "SessionORM",
    "ChunkResultORM",
    "PendingEncounterORM",
    "CascadeChainORM",
    "FinalEncounterORM",
    # Repositories
    "SessionRepository",
    "ChunkResultRepository",
    "PendingRepository",
    "CascadeRepository",
    "FinalEncounterRepository",
]
