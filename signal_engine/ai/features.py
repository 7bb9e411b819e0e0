"""Feature vector sent to the statistical prediction service."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from signal_engine.core.models import MarketSnapshot, OpenPosition

INDICATOR_FEATURES = (
    "sma20", "sma50", "rsi", "sma5", "sma10", "sma100", "ema12", "ema26",
    "macd", "macd_signal", "macd_histogram",
    "bb_upper", "bb_middle", "bb_lower", "bb_percent",
    "atr", "atr_percent", "realized_volatility",
    "volume_sma20", "obv", "volume_ratio", "adx",
)

FLAG_FEATURES = ("price_above_sma20", "price_above_sma50", "sma20_above_sma50")


def prepare_features(
    snapshot: MarketSnapshot,
    positions: List[OpenPosition],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Flatten indicators, order book, portfolio and time context."""
    now = now or datetime.utcnow()
    indicators = snapshot.indicators
    book = snapshot.order_book

    features: Dict[str, Any] = {name: indicators.get(name) for name in INDICATOR_FEATURES}
    features.update({name: 1 if indicators.get(name) else 0 for name in FLAG_FEATURES})

    features.update(
        current_price=snapshot.current_price,
        price_change_24h=snapshot.price_change_24h,
        spread_bps=book.spread_bps if book else None,
        imbalance_ratio=book.imbalance_ratio if book else None,
        mid_price=book.mid_price if book else None,
        position_count=len(positions),
        total_unrealized_pnl=float(sum(p.unrealized_pnl_usd for p in positions)),
        # Filled in only when a reasoning decision exists for the same pass
        llm_action_encoded=0,
        llm_size_usd=None,
        llm_confidence=None,
    )

    # isoweekday: Monday=1 .. Sunday=7, mapped so Sunday=0
    day_of_week = now.isoweekday() % 7
    features.update(
        hour_of_day=now.hour,
        day_of_week=day_of_week,
        is_weekend=1 if day_of_week in (0, 6) else 0,
        is_market_hours=1 if 9 <= now.hour < 17 else 0,
    )
    return features
