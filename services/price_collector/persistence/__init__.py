# Price Collector Persistence
# PostgreSQL and in-memory storage for snapshots, priorities, runs and gaps

"""
Persistence module.

Components:
- DatabasePool: asyncpg connection pool and schema bootstrap
- SnapshotRepository / PriorityRepository / RunRepository / GapQueueRepository:
  PostgreSQL implementations
- InMemory*Repository: process-local implementations with the same interface
"""

from .memory import (
    InMemoryGapQueueRepository,
    InMemoryPriorityRepository,
    InMemoryRunRepository,
    InMemorySnapshotRepository,
)
from .pool import DatabasePool
from .repository import (
    GapQueueRepository,
    PriorityRepository,
    RunRepository,
    SnapshotRepository,
)

__all__ = [
    "DatabasePool",
    "SnapshotRepository",
    "PriorityRepository",
    "RunRepository",
    "GapQueueRepository",
    "InMemorySnapshotRepository",
    "InMemoryPriorityRepository",
    "InMemoryRunRepository",
    "InMemoryGapQueueRepository",
]
