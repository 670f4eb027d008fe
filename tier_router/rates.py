"""
Fiat exchange rate source for cl-fee-tiers

Prices forwards in USD using a historical BTC price endpoint (by default
mempool.space `/api/v1/historical-price`). Lookups are cached per minute:
forwards inside the same minute share one price and one HTTP request.

The source itself does not retry. The Tier Manager retries RateLookupError
a bounded number of times before failing the page.
"""

import json
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import OrderedDict
from decimal import Decimal, InvalidOperation
from typing import Optional

from .errors import RateLookupError


SATS_PER_BTC = Decimal(100_000_000)

# Cached minute buckets kept in memory
RATE_CACHE_SIZE = 1024


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(int(sats)) / SATS_PER_BTC


def sats_to_usd(sats: int, price: Decimal) -> Decimal:
    """usd = sats / 1e8 * price, exact."""
    return sats_to_btc(sats) * price


class HttpRateSource:
    """
    RateSource backed by an HTTP historical price API.

    Args:
        url: Endpoint taking `currency` and `timestamp` (seconds) query args
        timeout: Per-request timeout in seconds
        plugin: Plugin for logging (optional)
        currency: Price currency key in the response
    """

    def __init__(self, url: str, timeout: int = 10, plugin=None, currency: str = "USD"):
        self.url = url
        self.timeout = timeout
        self.plugin = plugin
        self.currency = currency
        self._cache: 'OrderedDict[int, Decimal]' = OrderedDict()
        self._cache_lock = threading.Lock()

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(msg, level=level)

    def get_fiat_rate(self, timestamp_ms: Optional[int] = None) -> Decimal:
        """
        BTC price in `currency` at `timestamp_ms` (now when None).

        Raises:
            RateLookupError: on network, HTTP or payload errors
        """
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        bucket = int(timestamp_ms) // 60000

        with self._cache_lock:
            cached = self._cache.get(bucket)
            if cached is not None:
                self._cache.move_to_end(bucket)
                return cached

        price = self._fetch(bucket * 60, timestamp_ms)

        with self._cache_lock:
            self._cache[bucket] = price
            while len(self._cache) > RATE_CACHE_SIZE:
                self._cache.popitem(last=False)
        return price

    def _fetch(self, timestamp_s: int, timestamp_ms: int) -> Decimal:
        query = urllib.parse.urlencode({"currency": self.currency, "timestamp": timestamp_s})
        separator = '&' if '?' in self.url else '?'
        req = urllib.request.Request(
            f"{self.url}{separator}{query}",
            headers={
                'Accept': 'application/json',
                'User-Agent': 'cl-fee-tiers/1.0'
            },
            method='GET'
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode('utf-8')
        except urllib.error.HTTPError as e:
            raise RateLookupError(f"Rate API returned HTTP {e.code}", timestamp_ms)
        except urllib.error.URLError as e:
            raise RateLookupError(f"Rate API connection error: {e.reason}", timestamp_ms)
        except OSError as e:
            raise RateLookupError(f"Rate API request failed: {e}", timestamp_ms)

        return self._parse(body, timestamp_ms)

    def _parse(self, body: str, timestamp_ms: int) -> Decimal:
        """Extract the price from a `{"prices": [{"time": .., "USD": ..}]}` payload."""
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise RateLookupError(f"Rate API returned invalid JSON: {e}", timestamp_ms)

        prices = data.get("prices") if isinstance(data, dict) else None
        if not prices:
            raise RateLookupError("Rate API returned no prices", timestamp_ms)
        if not isinstance(prices, list) or not isinstance(prices[0], dict):
            raise RateLookupError(f"Rate API returned malformed prices: {prices!r}", timestamp_ms)

        raw = prices[0].get(self.currency)
        try:
            # via str() so a float price keeps its printed digits
            price = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            raise RateLookupError(f"Rate API returned invalid price: {raw!r}", timestamp_ms)
        if not price.is_finite() or price <= 0:
            raise RateLookupError(f"Rate API returned invalid price: {raw!r}", timestamp_ms)
        return price
