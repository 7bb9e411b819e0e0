"""Trade ideas published for high-confidence directional signals."""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from signal_engine.core.models import (
    Decision, MarketSnapshot, Strategy, TradeAction, TradeIdea
)
from signal_engine.core.strategy_config import StrategyConfig

STOP_LOSS_PCT = Decimal("0.025")
TAKE_PROFIT_PCT = Decimal("0.05")
IDEA_TTL = timedelta(hours=24)
IDEA_SIZE_USD = Decimal("10")


def build_trade_idea(
    strategy: Strategy,
    config: StrategyConfig,
    decision: Decision,
    snapshot: MarketSnapshot,
    min_confidence: float,
) -> Optional[TradeIdea]:
    """Idea with protective levels, or None if the decision does not qualify."""
    if decision.action not in (TradeAction.LONG, TradeAction.SHORT):
        return None
    if decision.confidence < min_confidence or snapshot.current_price is None:
        return None

    entry = Decimal(str(snapshot.current_price))
    if decision.action == TradeAction.LONG:
        stop_loss = entry * (1 - STOP_LOSS_PCT)
        take_profit = entry * (1 + TAKE_PROFIT_PCT)
    else:
        stop_loss = entry * (1 + STOP_LOSS_PCT)
        take_profit = entry * (1 - TAKE_PROFIT_PCT)

    return TradeIdea(
        user_id=strategy.user_id,
        strategy_id=strategy.id,
        symbol=decision.symbol,
        action=decision.action,
        confidence_pct=round(decision.confidence * 100, 1),
        reasoning=decision.rationale,
        entry_price=entry,
        stop_loss=stop_loss,
        take_profit=take_profit,
        exchange=config.exchange,
        trade_size_usd=IDEA_SIZE_USD,
        expires_at=datetime.utcnow() + IDEA_TTL,
        technical_indicators=snapshot.indicators,
        market_snapshot={
            "symbol": snapshot.symbol,
            "current_price": snapshot.current_price,
            "price_change_24h": snapshot.price_change_24h,
        },
    )
