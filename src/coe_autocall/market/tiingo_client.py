import logging
import time
from datetime import date, timedelta

import httpx
import numpy as np
import pandas as pd
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.tiingo.com/tiingo/daily"


class MarketDataError(RuntimeError):
    """Tiingo returned an error status or no usable prices."""


class TiingoClient:
    """Rate-limited, retry-enabled wrapper around the Tiingo daily prices endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        delay: float = 1.0,
        max_retries: int = 3,
        backoff: float = 2.0,
        client: httpx.Client | None = None,
    ):
        if not api_key:
            raise MarketDataError("Tiingo API key is not configured (COE_TIINGO_API_KEY)")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._delay = delay
        self._max_retries = max_retries
        self._backoff = backoff
        self._last_request_time: float = 0.0
        self._client = client or httpx.Client(timeout=15.0)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _rate_limit(self):
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self._delay:
            time.sleep(self._delay - elapsed)
        self._last_request_time = time.monotonic()

    def _get(self, url: str, params: dict) -> list[dict]:
        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff, min=2, max=60),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner():
            self._rate_limit()
            response = self._client.get(
                url,
                params={**params, "token": self._api_key},
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            return response.json()

        try:
            return _inner()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise MarketDataError(f"Ticker not found: {url}") from e
            if status == 401:
                raise MarketDataError("Invalid Tiingo API key") from e
            raise MarketDataError(f"Tiingo request failed with status {status}") from e

    def get_prices(self, ticker: str, start: date, end: date) -> pd.Series:
        """Adjusted closes indexed by trading date, oldest first."""
        payload = self._get(
            f"{self._base_url}/{ticker}/prices",
            {"startDate": start.isoformat(), "endDate": end.isoformat()},
        )
        if not payload:
            raise MarketDataError(f"No data for {ticker} between {start} and {end}")

        series = pd.Series(
            [float(item["adjClose"]) for item in payload],
            index=pd.DatetimeIndex([item["date"][:10] for item in payload]),
            name=ticker,
        ).sort_index()
        logger.info("Fetched %d prices for %s (%s to %s)", len(series), ticker, start, end)
        return series

    def get_history(self, ticker: str, years_back: int = 3, end: date | None = None) -> pd.Series:
        end = end or date.today()
        return self.get_prices(ticker, end - timedelta(days=365 * years_back), end)

    def get_returns(self, ticker: str, years_back: int = 3, end: date | None = None) -> pd.Series:
        return log_returns(self.get_history(ticker, years_back, end))

    def get_price_on(self, ticker: str, target: date) -> float:
        """Last adjusted close on or before ``target``."""
        # weekends and holidays: look back ten days, allow a few after
        prices = self.get_prices(ticker, target - timedelta(days=10), target + timedelta(days=5))
        return price_on(prices, target)


def log_returns(prices: pd.Series) -> pd.Series:
    return np.log(prices / prices.shift(1)).dropna()


def price_on(prices: pd.Series, target: date) -> float:
    eligible = prices[prices.index <= pd.Timestamp(target)]
    if eligible.empty:
        raise MarketDataError(f"No price on or before {target} for {prices.name}")
    return float(eligible.iloc[-1])
