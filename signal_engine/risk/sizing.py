"""Position sizing and trading cost estimates.

These are pure calculations. The RiskManager decides when they apply and
records their effect on a Decision.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from signal_engine.core.models import OrderBookSnapshot, TradeAction, TradeRecord, to_usd

# (maker, taker) fee rates
FEE_TABLE: Dict[str, Tuple[Decimal, Decimal]] = {
    "binance": (Decimal("0.001"), Decimal("0.002")),
    "coinbase": (Decimal("0.004"), Decimal("0.006")),
    "kraken": (Decimal("0.0016"), Decimal("0.0026")),
}
DEFAULT_FEES = (Decimal("0.001"), Decimal("0.002"))

BPS = Decimal("10000")


def risk_profile_multiplier(value: float) -> float:
    """Map a 0-100 risk appetite to a size multiplier.

    Below 33 halves the size, 33-66 leaves it alone, and 67-100 scales
    linearly from 1.5x to 3.0x.
    """
    if value < 33:
        return 0.5
    if value < 67:
        return 1.0
    return 1.5 + (min(value, 100) - 67) / 33 * 1.5


@dataclass
class KellyEstimate:
    """Kelly inputs and the clamped fraction of equity to risk."""
    win_rate: float
    payoff_ratio: float
    raw_fraction: float
    fraction: float
    trade_count: int


def kelly_estimate(
    trades: List[TradeRecord],
    kelly_fraction: float,
    min_trades: int,
    min_pct: float,
    max_pct: float,
) -> Optional[KellyEstimate]:
    """Fractional Kelly from closed trades, or None without enough evidence."""
    closed = [t for t in trades if t.pnl_usd is not None]
    if len(closed) < min_trades:
        return None

    wins = [float(t.pnl_usd) for t in closed if t.pnl_usd > 0]
    losses = [abs(float(t.pnl_usd)) for t in closed if t.pnl_usd < 0]
    if not wins or not losses:
        return None

    win_rate = len(wins) / len(closed)
    payoff = (sum(wins) / len(wins)) / (sum(losses) / len(losses))
    raw = (win_rate * payoff - (1 - win_rate)) / payoff
    fraction = min(max(raw * kelly_fraction, min_pct), max_pct)

    return KellyEstimate(
        win_rate=win_rate,
        payoff_ratio=payoff,
        raw_fraction=raw,
        fraction=fraction,
        trade_count=len(closed),
    )


def kelly_size(base_size: Decimal, fraction: float) -> Decimal:
    """Scale a base size treating 1% of equity as the neutral fraction."""
    return to_usd(base_size * Decimal(str(fraction)) / Decimal("0.01"))


def volatility_size(
    balance: Decimal,
    risk_per_trade: float,
    atr: Optional[float],
    price: Optional[float],
    atr_multiplier: float,
) -> Optional[Decimal]:
    """Size so that an ``atr_multiplier`` x ATR stop risks ``risk_per_trade`` of balance."""
    if not atr or not price or atr <= 0 or price <= 0 or atr_multiplier <= 0:
        return None
    stop_distance = Decimal(str(atr * atr_multiplier / price))
    return to_usd(balance * Decimal(str(risk_per_trade)) / stop_distance)


def estimate_slippage_bps(
    order_book: Optional[OrderBookSnapshot],
    action: TradeAction,
    size_usd: Decimal,
    default_bps: float,
) -> float:
    """Walk the book for ``size_usd`` and compare the average fill with mid.

    Buys consume asks, sells consume bids. Size beyond the visible depth is
    assumed to fill at the worst visible level.
    """
    if order_book is None or not order_book.mid_price:
        return default_bps
    levels = order_book.asks if action == TradeAction.LONG else order_book.bids
    if not levels or size_usd <= 0:
        return default_bps

    remaining = float(size_usd)
    base_filled = 0.0
    quote_filled = 0.0
    for price, quantity in levels:
        take = min(remaining, price * quantity)
        base_filled += take / price
        quote_filled += take
        remaining -= take
        if remaining <= 0:
            break
    if remaining > 0:
        worst_price = levels[-1][0]
        base_filled += remaining / worst_price
        quote_filled += remaining

    avg_price = quote_filled / base_filled
    mid = order_book.mid_price
    return abs(avg_price - mid) / mid * 10000


@dataclass
class TradeCosts:
    """Estimated round-trip entry cost of a trade in USD and basis points."""
    fee_usd: Decimal
    slippage_usd: Decimal
    opportunity_usd: Decimal
    total_usd: Decimal
    total_bps: float


def estimate_trade_costs(
    size_usd: Decimal,
    exchange: str,
    slippage_bps: float,
    opportunity_bps: float,
) -> TradeCosts:
    """Taker fee plus slippage plus opportunity cost for a market entry."""
    _, taker = FEE_TABLE.get((exchange or "").lower(), DEFAULT_FEES)
    fee = size_usd * taker
    slippage = size_usd * Decimal(str(slippage_bps)) / BPS
    opportunity = size_usd * Decimal(str(opportunity_bps)) / BPS
    total = fee + slippage + opportunity
    total_bps = float(total / size_usd * BPS) if size_usd > 0 else 0.0
    return TradeCosts(
        fee_usd=fee,
        slippage_usd=slippage,
        opportunity_usd=opportunity,
        total_usd=total,
        total_bps=total_bps,
    )
