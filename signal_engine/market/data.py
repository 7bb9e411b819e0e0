"""Market data retrieval through ccxt."""
import asyncio
from typing import Dict, List, Optional

import ccxt.async_support as ccxt
import structlog

from signal_engine.core.config import WorkerConfig, worker_config
from signal_engine.core.models import QUOTE_ASSETS, Candle, MarketSnapshot, OrderBookSnapshot
from signal_engine.market.indicators import calculate_indicators
from signal_engine.market.validation import validate_market_data
from signal_engine.utils.retry import RetryConfig, with_retry

logger = structlog.get_logger(__name__)


def to_ccxt_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC/USDT. Symbols already in ccxt form pass through."""
    if "/" in symbol:
        return symbol
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[:-len(quote)]}/{quote}"
    return symbol


class MarketDataClient:
    """
    Fetches candles and order books for target assets.

    One ccxt exchange instance is kept per venue. Strategies may name a venue
    ccxt does not know (e.g. the execution gateway's own id); those fall back
    to ``market_data_exchange``.
    """

    def __init__(self, settings: WorkerConfig = worker_config):
        self.settings = settings
        self._exchanges: Dict[str, ccxt.Exchange] = {}

    def _exchange(self, exchange_id: str) -> ccxt.Exchange:
        exchange_id = (exchange_id or self.settings.market_data_exchange).lower()
        if exchange_id not in ccxt.exchanges:
            exchange_id = self.settings.market_data_exchange
        if exchange_id not in self._exchanges:
            exchange_class = getattr(ccxt, exchange_id)
            self._exchanges[exchange_id] = exchange_class({"enableRateLimit": True})
        return self._exchanges[exchange_id]

    async def close(self):
        """Close every exchange session."""
        for exchange in self._exchanges.values():
            await exchange.close()
        self._exchanges.clear()

    async def fetch_candles(self, symbol: str, exchange_id: str) -> List[Candle]:
        """Fetch recent candles, retrying transport failures."""
        exchange = self._exchange(exchange_id)
        fetch = with_retry(
            max_retries=self.settings.fetch_max_retries,
            base_delay=self.settings.fetch_base_delay,
            retryable_exceptions=RetryConfig.MARKET_DATA_ERRORS,
        )(exchange.fetch_ohlcv)
        rows = await fetch(
            to_ccxt_symbol(symbol),
            timeframe=self.settings.candle_timeframe,
            limit=self.settings.candle_limit,
        )
        return [Candle.from_ohlcv(row) for row in rows]

    async def fetch_closes(self, symbol: str, exchange_id: str) -> Optional[List[float]]:
        """Best-effort close series, used for correlation against held symbols."""
        try:
            candles = await self.fetch_candles(symbol, exchange_id)
        except Exception as e:
            logger.warning("market_data.closes_unavailable", symbol=symbol, error=str(e))
            return None
        return [c.close for c in candles if c.close is not None]

    async def fetch_order_book(
        self, symbol: str, exchange_id: str, depth: Optional[int] = None
    ) -> Optional[OrderBookSnapshot]:
        """Top-of-book snapshot, or None when the venue does not answer."""
        depth = depth or self.settings.order_book_depth
        try:
            book = await self._exchange(exchange_id).fetch_order_book(
                to_ccxt_symbol(symbol), limit=max(depth, 20)
            )
        except Exception as e:
            logger.warning("market_data.order_book_unavailable", symbol=symbol, error=str(e))
            return None
        return OrderBookSnapshot.from_levels(
            symbol, book.get("bids") or [], book.get("asks") or [], depth
        )

    async def load_snapshot(self, symbol: str, exchange_id: str) -> Optional[MarketSnapshot]:
        """Fetch, validate and enrich one asset. Returns None if unusable."""
        try:
            candles = await self.fetch_candles(symbol, exchange_id)
        except Exception as e:
            logger.error("market_data.fetch_failed", symbol=symbol, error=str(e))
            return None

        result = validate_market_data(candles)
        for warning in result.warnings:
            logger.warning("market_data.quality_warning", symbol=symbol, warning=warning)
        if not result.valid:
            logger.warning("market_data.invalid", symbol=symbol, errors=result.errors)
            return None

        return MarketSnapshot(
            symbol=symbol,
            candles=candles,
            indicators=calculate_indicators(candles),
        )

    async def load_snapshots(self, symbols: List[str], exchange_id: str) -> List[MarketSnapshot]:
        """Snapshots for every usable symbol, preserving order."""
        snapshots = await asyncio.gather(
            *(self.load_snapshot(symbol, exchange_id) for symbol in symbols)
        )
        return [s for s in snapshots if s is not None]
