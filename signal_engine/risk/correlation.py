"""Return-series correlation and correlated exposure."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Sequence

import numpy as np

from signal_engine.core.models import OpenPosition, base_asset


def to_returns(prices: Sequence[float]) -> np.ndarray:
    """Simple returns of a price series."""
    values = np.asarray(prices, dtype=float)
    if values.size < 2:
        return np.array([])
    return np.diff(values) / values[:-1]


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation over the common trailing window.

    Returns 0.0 when fewer than two aligned points exist or either series
    has no variance.
    """
    n = min(len(xs), len(ys))
    if n < 2:
        return 0.0
    x = np.asarray(xs[-n:], dtype=float)
    y = np.asarray(ys[-n:], dtype=float)
    dx = x - x.mean()
    dy = y - y.mean()
    denominator = np.sqrt((dx ** 2).sum() * (dy ** 2).sum())
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    return float((dx * dy).sum() / denominator)


@dataclass
class CorrelationExposure:
    correlated_usd: Decimal
    total_usd: Decimal
    correlations: Dict[str, float] = field(default_factory=dict)

    @property
    def share(self) -> float:
        if self.total_usd <= 0:
            return 0.0
        return float(self.correlated_usd / self.total_usd)


def correlated_exposure(
    primary_prices: Sequence[float],
    positions: Iterable[OpenPosition],
    price_history: Dict[str, Sequence[float]],
    max_correlation: float,
) -> CorrelationExposure:
    """Share of open exposure in symbols whose returns track the primary's.

    Positions without price history are counted in the total but never as
    correlated.
    """
    primary_returns = to_returns(primary_prices)
    correlated = Decimal("0")
    total = Decimal("0")
    correlations: Dict[str, float] = {}

    for position in positions:
        total += position.size_usd
        history = price_history.get(position.symbol)
        if not history:
            continue
        r = pearson(primary_returns, to_returns(history))
        correlations[position.symbol] = round(r, 4)
        if abs(r) > max_correlation:
            correlated += position.size_usd

    return CorrelationExposure(correlated_usd=correlated, total_usd=total, correlations=correlations)


def in_group(symbol: str, group: Sequence[str]) -> bool:
    return base_asset(symbol) in set(group)


def group_exposure(
    positions: Iterable[OpenPosition], group: Sequence[str]
) -> CorrelationExposure:
    """Fallback when no price history is available: a fixed asset group."""
    correlated = Decimal("0")
    total = Decimal("0")
    for position in positions:
        total += position.size_usd
        if in_group(position.symbol, group):
            correlated += position.size_usd
    return CorrelationExposure(correlated_usd=correlated, total_usd=total)

