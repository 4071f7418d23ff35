"""
Price Collector Backfill Module

Detects minute buckets without full coverage and replays them through
gap-recovery collection runs.
"""

from .gap_queue import DrainResult, GapRecoveryQueue

__all__ = ["GapRecoveryQueue", "DrainResult"]
