"""Market data acquisition, validation and technical indicators."""

from signal_engine.market.data import MarketDataClient, to_ccxt_symbol
from signal_engine.market.indicators import calculate_indicators
from signal_engine.market.validation import ValidationResult, validate_market_data

__all__ = [
    'MarketDataClient',
    'to_ccxt_symbol',
    'calculate_indicators',
    'ValidationResult',
    'validate_market_data',
]
