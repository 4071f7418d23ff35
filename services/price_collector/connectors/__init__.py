# Price Collector Connectors
# Upstream market-data sources

"""
Connector module for upstream market-data sources.

Components:
- MarketDataSource: abstract ranked-list + batched-quote source
- CoinGeckoSource: CoinGecko REST implementation (httpx)
"""

from .base import MarketDataSource, RankedAsset
from .coingecko import CoinGeckoSource

__all__ = [
    "MarketDataSource",
    "RankedAsset",
    "CoinGeckoSource",
]
