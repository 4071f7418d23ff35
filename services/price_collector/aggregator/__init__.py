# Price Collector Aggregator
# Closing-value roll-ups and retention

"""
Aggregator module for deriving coarse granularities.

Components:
- AggregationCascade: minute -> hour -> day -> week / month roll-ups
  and per-granularity retention sweeps
"""

from .cascade import AggregationCascade

__all__ = [
    "AggregationCascade",
]
