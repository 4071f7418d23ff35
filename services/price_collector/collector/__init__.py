# Price Collector Pipeline
# Priorities, fetching, collection runs and scheduling

"""
Collector module.

Components:
- PriorityStore: ranked asset list with pinned-first batching
- SnapshotFetcher: one batched upstream call -> validated snapshots
- CollectionRun: one sequential pass over all batches for a minute bucket
- Scheduler: minute tick + daily priority refresh lifecycle
"""

from .fetcher import SnapshotFetcher
from .priority import FreshRanking, PriorityStore, StaleRanking
from .run import CollectionRun
from .scheduler import Scheduler, SchedulerState

__all__ = [
    "PriorityStore",
    "FreshRanking",
    "StaleRanking",
    "SnapshotFetcher",
    "CollectionRun",
    "Scheduler",
    "SchedulerState",
]
