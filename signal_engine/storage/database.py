"""Database storage for strategies, trades, positions and decision audit records."""
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import structlog
from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, Integer, Numeric, String, func, select, update
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from signal_engine.core.config import database_config
from signal_engine.core.models import (
    Decision, DecisionRecord, OpenPosition, PositionSide, RiskProfile,
    Strategy, StrategyStatus, TradeIdea, TradeRecord
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class StrategyModel(Base):
    """SQLAlchemy model for AI strategies."""
    __tablename__ = 'ai_strategies'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=StrategyStatus.RUNNING.value)
    risk_profile = Column(String, nullable=False, default=RiskProfile.BALANCED.value)
    target_assets = Column(JSON, default=list)
    max_drawdown_percent = Column(Numeric(10, 4), nullable=True)
    leverage_max = Column(Integer, nullable=True)
    is_paper_trading = Column(Boolean, default=False)
    exchange = Column(String, nullable=True)

    ml_confidence_threshold = Column(Float, nullable=True)
    llm_usage_mode = Column(String, nullable=True)
    llm_usage_percent = Column(Float, nullable=True)
    llm_monthly_budget_usd = Column(Numeric(36, 18), nullable=True)

    config = Column(JSON, default=dict)

    use_volatility_sizing = Column(Boolean, nullable=True)
    risk_per_trade = Column(Float, nullable=True)
    atr_multiplier = Column(Float, nullable=True)
    skip_high_cost_trades = Column(Boolean, nullable=True)
    max_cost_bps = Column(Float, nullable=True)
    include_slippage_estimate = Column(Boolean, nullable=True)
    use_smart_routing = Column(Boolean, nullable=True)
    twap_threshold_usd = Column(Numeric(36, 18), nullable=True)
    twap_duration_min = Column(Float, nullable=True)
    twap_slices = Column(Integer, nullable=True)
    enforce_correlation_limits = Column(Boolean, nullable=True)
    max_correlation = Column(Float, nullable=True)
    max_correlated_exposure = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)


class TradeModel(Base):
    """SQLAlchemy model for trades. Closed trades carry realized P&L."""
    __tablename__ = 'trades'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    strategy_id = Column(String, nullable=True, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    size_usd = Column(Numeric(36, 18), default=0)
    entry_price = Column(Numeric(36, 18), nullable=True)
    exit_price = Column(Numeric(36, 18), nullable=True)
    pnl_usd = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False, default="closed")
    entry_time = Column(DateTime, nullable=True)
    exit_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PositionModel(Base):
    """SQLAlchemy model for open positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    strategy_id = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), default=0)
    entry_price = Column(Numeric(36, 18), default=0)
    size_usd = Column(Numeric(36, 18), default=0)
    unrealized_pnl_usd = Column(Numeric(36, 18), default=0)
    updated_at = Column(DateTime, default=datetime.utcnow)


class DecisionModel(Base):
    """SQLAlchemy model for the per-pass decision audit record."""
    __tablename__ = 'ai_trade_decisions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    strategy_id = Column(String, nullable=False, index=True)
    decided_at = Column(DateTime, default=datetime.utcnow, index=True)

    market_snapshot = Column(JSON, default=dict)
    orderbook_snapshot = Column(JSON, nullable=True)
    technical_indicators = Column(JSON, default=dict)
    portfolio_state = Column(JSON, default=dict)
    model_versions = Column(JSON, default=list)
    raw_responses = Column(JSON, default=dict)
    raw_decision = Column(JSON, nullable=False)
    parsed_decision = Column(JSON, nullable=False)
    gate_verdicts = Column(JSON, default=list)
    model_decision_metadata = Column(JSON, default=dict)

    action = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    size_usd = Column(Numeric(36, 18), default=0)
    confidence_final = Column(Float, default=0)
    signal_sent = Column(Boolean, default=False)


class CredentialModel(Base):
    """SQLAlchemy model for per-user gateway credentials."""
    __tablename__ = 'bot_credentials'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    exchange = Column(String, nullable=False, default="webhook")
    environment = Column(String, nullable=False, default="production")
    webhook_secret = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class LLMUsageModel(Base):
    """SQLAlchemy model for the model usage ledger."""
    __tablename__ = 'llm_usage'

    id = Column(Integer, primary_key=True, autoincrement=True)
    strategy_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    used_llm = Column(Boolean, nullable=False)
    cost_usd = Column(Numeric(36, 18), default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class IdeaModel(Base):
    """SQLAlchemy model for published trade ideas."""
    __tablename__ = 'ai_ideas'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    strategy_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)
    confidence_pct = Column(Float, nullable=False)
    reasoning = Column(String, default="")
    entry_price = Column(Numeric(36, 18), nullable=False)
    stop_loss = Column(Numeric(36, 18), nullable=False)
    take_profit = Column(Numeric(36, 18), nullable=False)
    exchange = Column(String, nullable=False)
    trade_size_usd = Column(Numeric(36, 18), default=10)
    status = Column(String, default="active")
    expires_at = Column(DateTime, nullable=False)
    technical_indicators = Column(JSON, default=dict)
    market_snapshot = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        self.database_url = db_url

        engine_kwargs = {"echo": False}
        if db_url.endswith(":memory:"):
            # One shared connection, otherwise each session sees an empty database
            engine_kwargs.update(
                poolclass=StaticPool, connect_args={"check_same_thread": False}
            )

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        if self.database_url.startswith('sqlite+aiosqlite:///') and not self.database_url.endswith(":memory:"):
            db_file = self.database_url.replace('sqlite+aiosqlite:///', '', 1)
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Strategy operations
    async def save_strategy(self, strategy: Strategy):
        """Insert or replace a strategy row."""
        values = strategy.model_dump()
        values["status"] = strategy.status.value
        values["risk_profile"] = strategy.risk_profile.value

        async with self.session_maker() as session:
            db_strategy = await session.get(StrategyModel, strategy.id)
            if db_strategy is None:
                session.add(StrategyModel(**values))
            else:
                for key, value in values.items():
                    setattr(db_strategy, key, value)
                db_strategy.updated_at = datetime.utcnow()
            await session.commit()

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        async with self.session_maker() as session:
            db_strategy = await session.get(StrategyModel, strategy_id)
            if db_strategy is None:
                return None
            return self._strategy_from_model(db_strategy)

    async def get_active_strategies(self) -> List[Strategy]:
        """Strategies in the running state, oldest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(StrategyModel)
                .where(StrategyModel.status == StrategyStatus.RUNNING.value)
                .order_by(StrategyModel.created_at)
            )
            return [self._strategy_from_model(s) for s in result.scalars().all()]

    async def count_active_strategies(self) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.count(StrategyModel.id))
                .where(StrategyModel.status == StrategyStatus.RUNNING.value)
            )
            return int(result.scalar_one())

    async def update_strategy_status(self, strategy_id: str, status: StrategyStatus):
        async with self.session_maker() as session:
            await session.execute(
                update(StrategyModel)
                .where(StrategyModel.id == strategy_id)
                .values(status=status.value, updated_at=datetime.utcnow())
            )
            await session.commit()

    # Trade operations
    async def save_trade(self, trade: TradeRecord):
        async with self.session_maker() as session:
            db_trade = await session.get(TradeModel, trade.id)
            if db_trade is None:
                session.add(TradeModel(**trade.model_dump()))
            else:
                for key, value in trade.model_dump().items():
                    setattr(db_trade, key, value)
            await session.commit()

    async def get_closed_trades(
        self,
        strategy_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[TradeRecord]:
        """Trades with realized P&L, ordered by exit (or creation) time."""
        order_col = func.coalesce(TradeModel.exit_time, TradeModel.created_at)
        query = select(TradeModel).where(TradeModel.pnl_usd.is_not(None))

        if strategy_id:
            query = query.where(TradeModel.strategy_id == strategy_id)
        if user_id:
            query = query.where(TradeModel.user_id == user_id)
        if since:
            query = query.where(order_col >= since)

        query = query.order_by(order_col.desc() if newest_first else order_col.asc())
        if limit:
            query = query.limit(limit)

        async with self.session_maker() as session:
            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    # Position operations
    async def save_position(self, position: OpenPosition):
        values = position.model_dump()
        values["side"] = position.side.value
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position.id)
            if db_position is None:
                session.add(PositionModel(**values))
            else:
                for key, value in values.items():
                    setattr(db_position, key, value)
            await session.commit()

    async def get_open_positions(
        self, user_id: str, strategy_id: Optional[str] = None
    ) -> List[OpenPosition]:
        """Open positions for a user, optionally narrowed to one strategy."""
        query = select(PositionModel).where(PositionModel.user_id == user_id)
        if strategy_id:
            query = query.where(PositionModel.strategy_id == strategy_id)

        async with self.session_maker() as session:
            result = await session.execute(query)
            return [self._position_from_model(p) for p in result.scalars().all()]

    # Decision audit operations
    async def insert_decision(self, record: DecisionRecord) -> int:
        """Persist an audit record and return its id."""
        final = record.final_decision
        db_decision = DecisionModel(
            user_id=record.user_id,
            strategy_id=record.strategy_id,
            decided_at=record.decided_at,
            market_snapshot=record.market_snapshot,
            orderbook_snapshot=record.orderbook_snapshot,
            technical_indicators=record.technical_indicators,
            portfolio_state=record.portfolio_state,
            model_versions=record.model_versions,
            raw_responses=record.raw_responses,
            raw_decision=record.raw_decision.model_dump(mode="json"),
            parsed_decision=final.model_dump(mode="json"),
            gate_verdicts=final.verdicts(),
            model_decision_metadata=record.model_decision_metadata,
            action=final.action.value,
            symbol=final.symbol,
            size_usd=final.size_usd,
            confidence_final=record.confidence_final,
            signal_sent=record.signal_sent,
        )
        async with self.session_maker() as session:
            session.add(db_decision)
            await session.commit()
            return db_decision.id

    async def get_decision(self, decision_id: int) -> Optional[DecisionRecord]:
        async with self.session_maker() as session:
            db_decision = await session.get(DecisionModel, decision_id)
            if db_decision is None:
                return None
            return self._decision_from_model(db_decision)

    async def count_signals_since(self, strategy_id: str, since: datetime) -> int:
        """Audit records with a dispatched signal since ``since``."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.count(DecisionModel.id)).where(
                    DecisionModel.strategy_id == strategy_id,
                    DecisionModel.signal_sent.is_(True),
                    DecisionModel.decided_at >= since,
                )
            )
            return int(result.scalar_one())

    # Credential operations
    async def save_credential(
        self,
        user_id: str,
        webhook_secret: str,
        exchange: str = "webhook",
        environment: str = "production",
    ):
        async with self.session_maker() as session:
            session.add(CredentialModel(
                user_id=user_id,
                exchange=exchange,
                environment=environment,
                webhook_secret=webhook_secret,
            ))
            await session.commit()

    async def get_webhook_secret(self, user_id: str) -> Optional[str]:
        """The user's production webhook secret, if one is configured."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(CredentialModel.webhook_secret)
                .where(
                    CredentialModel.user_id == user_id,
                    CredentialModel.exchange == "webhook",
                    CredentialModel.environment == "production",
                )
                .order_by(CredentialModel.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # Usage ledger operations
    async def record_llm_usage(
        self, strategy_id: str, user_id: str, used_llm: bool, cost_usd: Decimal
    ):
        async with self.session_maker() as session:
            session.add(LLMUsageModel(
                strategy_id=strategy_id,
                user_id=user_id,
                used_llm=used_llm,
                cost_usd=cost_usd,
            ))
            await session.commit()

    async def is_llm_budget_exceeded(self, strategy_id: str) -> bool:
        """True once this month's reasoning spend reaches the strategy budget.

        A strategy without a budget is never over it.
        """
        now = datetime.utcnow()
        month_start = datetime(now.year, now.month, 1)

        async with self.session_maker() as session:
            db_strategy = await session.get(StrategyModel, strategy_id)
            if db_strategy is None or db_strategy.llm_monthly_budget_usd is None:
                return False

            result = await session.execute(
                select(func.coalesce(func.sum(LLMUsageModel.cost_usd), 0)).where(
                    LLMUsageModel.strategy_id == strategy_id,
                    LLMUsageModel.used_llm.is_(True),
                    LLMUsageModel.created_at >= month_start,
                )
            )
            spent = Decimal(str(result.scalar_one()))
            return spent >= Decimal(str(db_strategy.llm_monthly_budget_usd))

    # Idea operations
    async def insert_idea(self, idea: TradeIdea) -> int:
        values = idea.model_dump(exclude={"id"})
        values["action"] = idea.action.value
        async with self.session_maker() as session:
            db_idea = IdeaModel(**values)
            session.add(db_idea)
            await session.commit()
            return db_idea.id

    async def get_active_ideas(self, user_id: str) -> List[TradeIdea]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(IdeaModel).where(
                    IdeaModel.user_id == user_id,
                    IdeaModel.status == "active",
                    IdeaModel.expires_at > datetime.utcnow(),
                )
            )
            return [TradeIdea.model_validate(i, from_attributes=True) for i in result.scalars().all()]

    # Helpers
    def _strategy_from_model(self, model: StrategyModel) -> Strategy:
        return Strategy.model_validate(model, from_attributes=True)

    def _trade_from_model(self, model: TradeModel) -> TradeRecord:
        return TradeRecord.model_validate(model, from_attributes=True)

    def _position_from_model(self, model: PositionModel) -> OpenPosition:
        return OpenPosition(
            id=model.id,
            user_id=model.user_id,
            strategy_id=model.strategy_id,
            symbol=model.symbol,
            side=PositionSide(model.side),
            quantity=model.quantity or Decimal("0"),
            entry_price=model.entry_price or Decimal("0"),
            size_usd=model.size_usd or Decimal("0"),
            unrealized_pnl_usd=model.unrealized_pnl_usd or Decimal("0"),
            updated_at=model.updated_at,
        )

    def _decision_from_model(self, model: DecisionModel) -> DecisionRecord:
        return DecisionRecord(
            id=model.id,
            user_id=model.user_id,
            strategy_id=model.strategy_id,
            decided_at=model.decided_at,
            market_snapshot=model.market_snapshot or {},
            orderbook_snapshot=model.orderbook_snapshot,
            technical_indicators=model.technical_indicators or {},
            portfolio_state=model.portfolio_state or {},
            model_versions=model.model_versions or [],
            raw_responses=model.raw_responses or {},
            raw_decision=Decision.model_validate(model.raw_decision),
            final_decision=Decision.model_validate(model.parsed_decision),
            confidence_final=model.confidence_final or 0.0,
            model_decision_metadata=model.model_decision_metadata or {},
            signal_sent=bool(model.signal_sent),
        )
