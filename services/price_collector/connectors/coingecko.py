"""
CoinGecko Market Data Source

REST endpoints:
- Ranked list: GET /coins/markets?vs_currency=usd&order=market_cap_desc&per_page=250&page=N
- Quotes:      GET /simple/price?ids=a,b,c&vs_currencies=usd&include_market_cap=true&...

Status handling:
- 429        -> ThrottledError (Retry-After honoured)
- 401 / 403  -> AuthError
- 5xx        -> UpstreamServerError
- transport  -> NetworkError
Any other non-2xx status is raised as httpx.HTTPStatusError (unknown class).
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from ..core.errors import AuthError, NetworkError, ThrottledError, UpstreamServerError
from ..core.metrics import record_upstream_call
from .base import MarketDataSource, RankedAsset

logger = logging.getLogger(__name__)


COINGECKO_DEMO_BASE = "https://api.coingecko.com/api/v3"
COINGECKO_PRO_BASE = "https://pro-api.coingecko.com/api/v3"

MARKETS_PATH = "/coins/markets"
SIMPLE_PRICE_PATH = "/simple/price"

VS_CURRENCY = "usd"

# Header name per API tier
API_KEY_HEADERS = {
    "demo": "x-cg-demo-api-key",
    "pro": "x-cg-pro-api-key",
}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class CoinGeckoSource(MarketDataSource):
    """
    CoinGecko REST source.

    Usage:
        source = CoinGeckoSource(api_key="...", api_tier="demo")
        page = await source.fetch_ranked_page(1)
        quotes = await source.fetch_quotes(["bitcoin", "ethereum"])
        await source.close()
    """

    name = "coingecko"

    def __init__(
        self,
        api_key: str = "",
        api_tier: str = "demo",
        base_url: str = "",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        tier = (api_tier or "demo").strip().lower()
        if tier not in API_KEY_HEADERS:
            raise ValueError(f"Unknown CoinGecko API tier: {api_tier}")
        self.api_tier = tier
        self.api_key = api_key.strip()
        self.base_url = (base_url or (COINGECKO_DEMO_BASE if tier == "demo" else COINGECKO_PRO_BASE)).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers[API_KEY_HEADERS[self.api_tier]] = self.api_key
        return headers

    async def _get(self, path: str, params: dict[str, Any], endpoint: str) -> Any:
        client = await self._get_client()
        url = f"{self.base_url}{path}"

        try:
            response = await client.get(url, params=params, headers=self._headers())
        except httpx.TransportError as e:
            record_upstream_call(endpoint, "network_error")
            raise NetworkError(f"[coingecko] {endpoint}: {type(e).__name__}: {e}") from e

        status = response.status_code
        if status == 429:
            record_upstream_call(endpoint, "throttled")
            raise ThrottledError(
                f"[coingecko] {endpoint}: rate limited",
                retry_after_seconds=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status in (401, 403):
            record_upstream_call(endpoint, "auth_error")
            raise AuthError(f"[coingecko] {endpoint}: HTTP {status} (check API key/tier)", status_code=status)
        if status >= 500:
            record_upstream_call(endpoint, "server_error")
            raise UpstreamServerError(f"[coingecko] {endpoint}: HTTP {status}", status_code=status)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            record_upstream_call(endpoint, "client_error")
            logger.error(
                f"[coingecko] {endpoint}: HTTP {status}: "
                f"{e.response.text[:200] if e.response.text else 'no body'}"
            )
            raise

        data = response.json()

        # Throttling is sometimes reported inside a 200 body
        if isinstance(data, dict) and isinstance(data.get("status"), dict):
            error_code = data["status"].get("error_code")
            if error_code == 429:
                record_upstream_call(endpoint, "throttled")
                raise ThrottledError(f"[coingecko] {endpoint}: {data['status'].get('error_message')}")
            if error_code in (401, 403, 10002, 10010, 10011):
                record_upstream_call(endpoint, "auth_error")
                raise AuthError(f"[coingecko] {endpoint}: {data['status'].get('error_message')}")

        record_upstream_call(endpoint, "ok")
        return data

    async def fetch_ranked_page(self, page: int, per_page: Optional[int] = None) -> list[RankedAsset]:
        """
        Fetch one page of coins ordered by market cap.

        Rows without a market_cap_rank are skipped.
        """
        params = {
            "vs_currency": VS_CURRENCY,
            "order": "market_cap_desc",
            "per_page": per_page or self.page_size,
            "page": page,
            "sparkline": "false",
        }
        data = await self._get(MARKETS_PATH, params, endpoint="markets")
        if not isinstance(data, list):
            raise UpstreamServerError(f"[coingecko] markets: unexpected payload type {type(data).__name__}")

        ranked: list[RankedAsset] = []
        for item in data:
            asset_id = item.get("id")
            rank = item.get("market_cap_rank")
            if not asset_id or rank is None:
                continue
            try:
                rank = int(rank)
            except (TypeError, ValueError):
                continue
            if rank <= 0:
                continue
            ranked.append(
                RankedAsset(
                    asset_id=asset_id,
                    rank=rank,
                    weight_metric=_decimal_or_none(item.get("market_cap")),
                    symbol=(item.get("symbol") or "").upper() or None,
                )
            )
        return ranked

    async def fetch_quotes(self, asset_ids: list[str]) -> dict[str, dict[str, Any]]:
        """
        Fetch current USD quotes for up to max_ids_per_call ids.

        Response format:
            {"bitcoin": {"usd": 97500.1, "usd_market_cap": ..., "usd_24h_vol": ...,
                         "usd_24h_change": ..., "last_updated_at": 1735689660}}
        """
        if not asset_ids:
            return {}
        if len(asset_ids) > self.max_ids_per_call:
            raise ValueError(f"At most {self.max_ids_per_call} ids per call, got {len(asset_ids)}")

        params = {
            "ids": ",".join(asset_ids),
            "vs_currencies": VS_CURRENCY,
            "include_market_cap": "true",
            "include_24hr_vol": "true",
            "include_24hr_change": "true",
            "include_last_updated_at": "true",
            "precision": "full",
        }
        data = await self._get(SIMPLE_PRICE_PATH, params, endpoint="simple_price")
        if not isinstance(data, dict):
            raise UpstreamServerError(f"[coingecko] simple_price: unexpected payload type {type(data).__name__}")

        quotes: dict[str, dict[str, Any]] = {}
        for asset_id, item in data.items():
            if not isinstance(item, dict) or not item:
                continue
            quotes[asset_id] = {
                "price": item.get(VS_CURRENCY),
                "market_cap": item.get(f"{VS_CURRENCY}_market_cap"),
                "total_volume": item.get(f"{VS_CURRENCY}_24h_vol"),
                "price_change_24h": item.get(f"{VS_CURRENCY}_24h_change"),
                "last_updated_at": item.get("last_updated_at"),
            }
        return quotes
