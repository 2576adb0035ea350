"""
Price oracle interfaces.

PythPriceService polls the Pyth Hermes REST API on a background thread and
serves the latest cached quote per symbol. Its lifecycle is explicit: the
process that builds it calls start() and stop(); nothing is started at
import time.
"""
from __future__ import annotations
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import requests

from openrebalance.config.schemas import OracleConfig
from openrebalance.utils.logging import get_logger
from openrebalance.utils.retry import retry_call

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: float
    confidence: float = 0.0
    timestamp: float = 0.0  # unix seconds of the publish time


class PriceOracle(ABC):
    """Source of USD prices keyed by asset symbol."""

    @abstractmethod
    def get_price(self, symbol: str) -> Optional[PriceQuote]:
        """Return the latest quote for symbol, or None when unknown."""
        pass

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        quotes = {}
        for symbol in symbols:
            quote = self.get_price(symbol)
            if quote is not None:
                quotes[symbol.upper()] = quote
        return quotes


class StaticPriceOracle(PriceOracle):
    """Fixed prices, settable at runtime. Used for dry runs and tests."""

    def __init__(self, prices: Optional[Mapping[str, float]] = None):
        self._prices: Dict[str, float] = {k.upper(): float(v) for k, v in (prices or {}).items()}

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol.upper()] = float(price)

    def remove_price(self, symbol: str) -> None:
        self._prices.pop(symbol.upper(), None)

    def get_price(self, symbol: str) -> Optional[PriceQuote]:
        price = self._prices.get(symbol.upper())
        if price is None:
            return None
        return PriceQuote(symbol=symbol.upper(), price=price, timestamp=time.time())


def parse_hermes_price(entry: Dict) -> PriceQuote:
    """Convert one `parsed` entry of a Hermes response into a quote (price * 10^expo)."""
    price = entry["price"]
    expo = int(price["expo"])
    return PriceQuote(
        symbol="",
        price=int(price["price"]) * (10 ** expo),
        confidence=int(price.get("conf", 0)) * (10 ** expo),
        timestamp=float(price.get("publish_time", 0)),
    )


class PythPriceService(PriceOracle):
    """
    Pyth Hermes client with a background refresh loop.

    Usage:
        oracle = PythPriceService({"WETH": "0xff61...", "USDC": "0xeaa0..."})
        oracle.start()
        quote = oracle.get_price("WETH")
        oracle.stop()

    `feed_ids` maps symbol -> Pyth price feed id. `on_quotes` is called with
    every freshly fetched batch (used to persist price history).
    """

    def __init__(
        self,
        feed_ids: Mapping[str, str],
        config: Optional[OracleConfig] = None,
        session: Optional[requests.Session] = None,
        on_quotes: Optional[Callable[[List[PriceQuote]], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or OracleConfig()
        self.feed_ids: Dict[str, str] = {k.upper(): v for k, v in feed_ids.items()}
        self.session = session or requests.Session()
        self.on_quotes = on_quotes
        self._clock = clock
        self._cache: Dict[str, PriceQuote] = {}
        self._fetched_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Fetch once, then keep refreshing every poll_interval_seconds."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="pyth-price-poll", daemon=True)
        self._thread.start()
        LOGGER.info(f"Price oracle started ({len(self.feed_ids)} feeds)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        LOGGER.info("Price oracle stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.refresh()
            except requests.RequestException as e:
                LOGGER.warning(f"Price refresh failed: {e}")
            self._stop_event.wait(self.config.poll_interval_seconds)

    def fetch(self, symbols: Iterable[str]) -> List[PriceQuote]:
        """Fetch the latest quotes for symbols from Hermes (one request)."""
        wanted = [(s.upper(), self.feed_ids[s.upper()]) for s in symbols if s.upper() in self.feed_ids]
        if not wanted:
            return []
        by_feed = {self._normalize_id(feed): symbol for symbol, feed in wanted}
        params = [("ids[]", feed) for _, feed in wanted] + [("parsed", "true")]
        url = f"{self.config.hermes_url.rstrip('/')}/v2/updates/price/latest"

        def _get():
            response = self.session.get(url, params=params, timeout=self.config.request_timeout_seconds)
            response.raise_for_status()
            return response.json()

        payload = retry_call(_get, retries=self.config.max_retries, retry_on=(requests.RequestException,),
                             label="hermes")
        quotes = []
        for entry in payload.get("parsed") or []:
            symbol = by_feed.get(self._normalize_id(entry.get("id", "")))
            if symbol is None:
                continue
            parsed = parse_hermes_price(entry)
            quotes.append(PriceQuote(symbol, parsed.price, parsed.confidence, parsed.timestamp))
        return quotes

    def refresh(self, symbols: Optional[Iterable[str]] = None) -> List[PriceQuote]:
        quotes = self.fetch(symbols if symbols is not None else list(self.feed_ids))
        now = self._clock()
        with self._lock:
            for quote in quotes:
                self._cache[quote.symbol] = quote
                self._fetched_at[quote.symbol] = now
        if quotes and self.on_quotes is not None:
            self.on_quotes(quotes)
        return quotes

    def get_price(self, symbol: str) -> Optional[PriceQuote]:
        symbol = symbol.upper()
        with self._lock:
            quote = self._cache.get(symbol)
            fetched_at = self._fetched_at.get(symbol, 0.0)
        if quote is not None and self._clock() - fetched_at <= self.config.max_price_age_seconds:
            return quote
        if symbol not in self.feed_ids:
            return None
        try:
            self.refresh([symbol])
        except requests.RequestException as e:
            LOGGER.warning(f"Price fetch failed for {symbol}: {e}", extra={"symbol": symbol})
            return None
        with self._lock:
            return self._cache.get(symbol)

    @staticmethod
    def _normalize_id(feed_id: str) -> str:
        return feed_id.lower().removeprefix("0x")
