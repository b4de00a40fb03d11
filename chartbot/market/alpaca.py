"""Alpaca market-data client — historical bars for backtesting.

Implements the DataProvider protocol against the Alpaca Data API v2:

  - /v2/stocks/{symbol}/bars  -> OHLCV bars (paginated via next_page_token)

Alpaca returns bars with single-letter keys (t, o, h, l, c, v); these are
normalized into Bar models. Requests are rate limited and retried with
exponential backoff on 5xx and network errors.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import httpx
from pydantic import ValidationError

from chartbot.backtesting.exceptions import DataFetchError
from chartbot.common.config import Settings, get_settings
from chartbot.common.exceptions import ParseError
from chartbot.common.logging import get_logger
from chartbot.common.schemas import Bar
from chartbot.market.rate_limiter import RateLimiter

logger = get_logger("MARKET")

# Short aliases accepted by the backtester → Alpaca timeframe strings
TIMEFRAME_ALIASES: dict[str, str] = {
    "1m": "1Min",
    "5m": "5Min",
    "15m": "15Min",
    "30m": "30Min",
    "1h": "1Hour",
    "4h": "4Hour",
    "1d": "1Day",
    "1w": "1Week",
}


def to_alpaca_timeframe(timeframe: str) -> str:
    """Translate a timeframe alias into Alpaca's format.

    Alpaca-native values ("1Hour", "15Min") pass through unchanged.

    Raises:
        DataFetchError: If the timeframe is not recognized.
    """
    if timeframe in TIMEFRAME_ALIASES:
        return TIMEFRAME_ALIASES[timeframe]
    if timeframe in TIMEFRAME_ALIASES.values():
        return timeframe
    raise DataFetchError(
        f"Unsupported timeframe: {timeframe}",
        context={"supported": sorted(TIMEFRAME_ALIASES)},
    )


def _format_rfc3339(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC (naive values are treated as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_bar(raw: dict) -> Bar:
    """Convert an Alpaca bar payload into a Bar.

    Raises:
        ParseError: If required keys are missing or malformed.
    """
    try:
        return Bar(
            timestamp=raw["t"],
            open=raw["o"],
            high=raw["h"],
            low=raw["l"],
            close=raw["c"],
            volume=raw.get("v", 0),
        )
    except (KeyError, TypeError, ValidationError) as exc:
        raise ParseError(
            f"Malformed Alpaca bar: {exc}",
            context={"bar": raw},
        ) from exc


class AlpacaBarsProvider:
    """Historical-bars provider backed by the Alpaca Data API.

    Creates a new httpx.AsyncClient per fetch so concurrent backtests never
    share a connection pool across event loops.

    Args:
        settings: Credentials, base URL and retry/rate settings.
            Defaults to get_settings().
        feed: Alpaca data feed ("iex" for free accounts, "sip" for paid).
    """

    def __init__(self, settings: Settings | None = None, feed: str = "iex") -> None:
        self.settings = settings or get_settings()
        self.feed = feed
        self.limiter = RateLimiter(self.settings.alpaca_rate_limit_per_second)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.alpaca_api_key_id:
            headers["APCA-API-KEY-ID"] = self.settings.alpaca_api_key_id
        if self.settings.alpaca_api_secret_key:
            headers["APCA-API-SECRET-KEY"] = self.settings.alpaca_api_secret_key
        return headers

    async def fetch_bars(
        self,
        symbol: str,
        timeframe: str,
        start_date: datetime,
        end_date: datetime,
    ) -> list[Bar]:
        """Fetch every bar in [start_date, end_date], following pagination.

        Args:
            symbol: Stock symbol, e.g. "AAPL".
            timeframe: Alias ("1h") or Alpaca timeframe ("1Hour").
            start_date: Range start (inclusive).
            end_date: Range end (inclusive).

        Returns:
            Bars ordered by timestamp (Alpaca returns them ascending).

        Raises:
            DataFetchError: On HTTP / network failure after retries.
            ParseError: If the response has an unexpected structure.
        """
        url = f"{self.settings.alpaca_data_url}/v2/stocks/{symbol}/bars"
        params: dict[str, str | int] = {
            "timeframe": to_alpaca_timeframe(timeframe),
            "start": _format_rfc3339(start_date),
            "end": _format_rfc3339(end_date),
            "limit": self.settings.alpaca_page_limit,
            "adjustment": "raw",
            "feed": self.feed,
        }

        bars: list[Bar] = []
        page = 0
        while True:
            payload = await self._get_with_retry(url, params)
            page += 1

            if not isinstance(payload, dict):
                raise ParseError(
                    "Alpaca bars response is not an object",
                    context={"symbol": symbol, "type": type(payload).__name__},
                )

            # Alpaca sends "bars": null when the range is empty
            bars.extend(normalize_bar(raw) for raw in payload.get("bars") or [])

            next_token = payload.get("next_page_token")
            if not next_token:
                break
            params["page_token"] = next_token

        logger.info(
            "Historical bars fetched",
            extra={
                "data": {
                    "symbol": symbol,
                    "timeframe": timeframe,
                    "bars": len(bars),
                    "pages": page,
                }
            },
        )
        return bars

    async def _get_with_retry(self, url: str, params: dict) -> dict:
        """GET a URL with exponential backoff retry.

        Raises:
            DataFetchError: If all retries are exhausted or the API rejects the request.
        """
        max_retries = self.settings.alpaca_max_retries

        for attempt in range(max_retries + 1):
            try:
                await self.limiter.acquire()
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.get(url, headers=self._headers(), params=params)
                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code
                retryable = status_code >= 500 or status_code == 429

                if retryable and attempt < max_retries:
                    wait = 2**attempt  # 1s, 2s, 4s
                    logger.warning(
                        f"Alpaca returned {status_code}, retrying",
                        extra={
                            "data": {
                                "url": url,
                                "status_code": status_code,
                                "attempt": attempt + 1,
                                "wait_seconds": wait,
                            }
                        },
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error(
                        "HTTP error fetching bars",
                        extra={
                            "data": {
                                "url": url,
                                "status_code": status_code,
                                "attempts": attempt + 1,
                            }
                        },
                    )
                    raise DataFetchError(
                        f"HTTP {status_code} fetching {url} after {attempt + 1} attempts"
                    ) from exc

            except httpx.RequestError as exc:
                if attempt < max_retries:
                    wait = 2**attempt
                    logger.warning(
                        "Network error, retrying",
                        extra={
                            "data": {
                                "url": url,
                                "error": str(exc),
                                "attempt": attempt + 1,
                                "wait_seconds": wait,
                            }
                        },
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error(
                        "Network error fetching bars, all retries exhausted",
                        extra={"data": {"url": url, "error": str(exc)}},
                    )
                    raise DataFetchError(
                        f"Network error fetching {url} after {attempt + 1} attempts: {exc}"
                    ) from exc

        # Unreachable: the loop either returns or raises
        raise DataFetchError(f"Failed to fetch {url}")
