"""Data models for the AI signal engine.

This module defines the data structures shared by the decision pipeline:
- Strategies and their open positions / closed trades
- Market snapshots (candles, indicators, order book)
- Decisions and the gate annotations attached to them
- Model service results and the persisted audit record

All monetary values use Decimal for precision. Indicator values, confidences
and correlations are plain floats.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

USD_QUANT = Decimal("0.01")
QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "USD")


def to_usd(value: Any) -> Decimal:
    """Convert a numeric value to a cent-quantized Decimal."""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(USD_QUANT, rounding=ROUND_HALF_UP)


def base_asset(symbol: str) -> str:
    """BTCUSDT -> BTC."""
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)]
    return symbol


# =============================================================================
# Enums
# =============================================================================

class TradeAction(str, Enum):
    """Action proposed by a decision."""
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class ModelSource(str, Enum):
    """Which model produced a raw decision."""
    ML = "ml"
    LLM = "llm"


class UsageMode(str, Enum):
    """How the arbitrator chooses between the two models."""
    ML_ONLY = "ml_only"
    LLM_ONLY = "llm_only"
    HYBRID = "hybrid"
    SMART = "smart"


class StrategyStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    BACKTESTING = "backtesting"
    TERMINATED = "terminated"


class RiskProfile(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class GateVerdict(str, Enum):
    """Outcome recorded by a gate on a decision."""
    ALLOW = "allow"
    RESIZE = "resize"
    DENY = "deny"
    WARN = "warn"
    PAUSE = "pause"
    SKIP = "skip"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


# =============================================================================
# Strategy Models
# =============================================================================

class Strategy(BaseModel):
    """A user's automated strategy as stored in the strategy table.

    ``config`` holds the free-form override object. The flat columns are the
    legacy location of the same settings and are consulted when the override
    object does not set a key.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()), description="Strategy ID")
    user_id: str = Field(..., description="Owning user")
    name: str = Field(default="AI Strategy", description="Display name")
    status: StrategyStatus = Field(default=StrategyStatus.RUNNING)
    risk_profile: RiskProfile = Field(default=RiskProfile.BALANCED)
    target_assets: List[str] = Field(default_factory=list)
    max_drawdown_percent: Optional[Decimal] = Field(default=None)
    leverage_max: Optional[int] = Field(default=None)
    is_paper_trading: bool = Field(default=False)
    exchange: Optional[str] = Field(default=None)

    # Model arbitration
    ml_confidence_threshold: Optional[float] = Field(default=None)
    llm_usage_mode: Optional[str] = Field(default=None)
    llm_usage_percent: Optional[float] = Field(default=None)
    llm_monthly_budget_usd: Optional[Decimal] = Field(default=None)

    # Override object
    config: Dict[str, Any] = Field(default_factory=dict)

    # Legacy flat sizing columns
    use_volatility_sizing: Optional[bool] = None
    risk_per_trade: Optional[float] = None
    atr_multiplier: Optional[float] = None
    skip_high_cost_trades: Optional[bool] = None
    max_cost_bps: Optional[float] = None
    include_slippage_estimate: Optional[bool] = None
    use_smart_routing: Optional[bool] = None
    twap_threshold_usd: Optional[Decimal] = None
    twap_duration_min: Optional[float] = None
    twap_slices: Optional[int] = None
    enforce_correlation_limits: Optional[bool] = None
    max_correlation: Optional[float] = None
    max_correlated_exposure: Optional[float] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("config", mode="before")
    @classmethod
    def none_config_is_empty(cls, v: Any) -> Dict[str, Any]:
        return v or {}

    @field_validator("target_assets", mode="before")
    @classmethod
    def none_targets_is_empty(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


class TradeRecord(BaseModel):
    """A trade row. A trade is closed once it carries realized P&L."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    strategy_id: Optional[str] = None
    symbol: str
    side: str = "buy"
    size_usd: Decimal = Decimal("0")
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    pnl_usd: Optional[Decimal] = None
    status: str = "closed"
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_closed(self) -> bool:
        return self.pnl_usd is not None

    @property
    def is_winner(self) -> bool:
        return self.pnl_usd is not None and self.pnl_usd > 0


class OpenPosition(BaseModel):
    """An open position held by a user."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    strategy_id: Optional[str] = None
    symbol: str
    side: PositionSide = PositionSide.LONG
    quantity: Decimal = Decimal("0")
    entry_price: Decimal = Decimal("0")
    size_usd: Decimal = Decimal("0")
    unrealized_pnl_usd: Decimal = Decimal("0")
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def base_asset(self) -> str:
        return base_asset(self.symbol)


# =============================================================================
# Market Data Models
# =============================================================================

class Candle(BaseModel):
    """One OHLCV bar. Fields may be missing on raw venue data."""

    time: Optional[int] = Field(default=None, description="Open time in ms")
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None

    @classmethod
    def from_ohlcv(cls, row: List[Any]) -> "Candle":
        """Build from a ccxt ``[ts, o, h, l, c, v]`` row."""
        padded = list(row) + [None] * (6 - len(row))
        return cls(
            time=padded[0],
            open=padded[1],
            high=padded[2],
            low=padded[3],
            close=padded[4],
            volume=padded[5],
        )


class OrderBookSnapshot(BaseModel):
    """Top-of-book snapshot with derived spread and imbalance."""

    symbol: str
    bids: List[Tuple[float, float]] = Field(default_factory=list)
    asks: List[Tuple[float, float]] = Field(default_factory=list)
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    spread_bps: Optional[float] = None
    mid_price: Optional[float] = None
    imbalance_ratio: float = 1.0
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def from_levels(
        cls,
        symbol: str,
        bids: List[List[float]],
        asks: List[List[float]],
        depth: int = 10,
    ) -> "OrderBookSnapshot":
        top_bids = [(float(p), float(q)) for p, q, *_ in bids[:depth]]
        top_asks = [(float(p), float(q)) for p, q, *_ in asks[:depth]]
        best_bid = top_bids[0][0] if top_bids else None
        best_ask = top_asks[0][0] if top_asks else None

        spread_bps = None
        mid_price = None
        if best_bid and best_ask:
            spread_bps = (best_ask - best_bid) / best_bid * 10000
            mid_price = (best_bid + best_ask) / 2

        bid_volume = sum(q for _, q in top_bids)
        ask_volume = sum(q for _, q in top_asks)
        imbalance = bid_volume / ask_volume if ask_volume > 0 else 1.0

        return cls(
            symbol=symbol,
            bids=top_bids,
            asks=top_asks,
            best_bid=best_bid,
            best_ask=best_ask,
            spread_bps=spread_bps,
            mid_price=mid_price,
            imbalance_ratio=imbalance,
        )


class MarketSnapshot(BaseModel):
    """Validated candles plus indicators for one asset."""

    symbol: str
    candles: List[Candle]
    indicators: Dict[str, Any] = Field(default_factory=dict)
    order_book: Optional[OrderBookSnapshot] = None

    @property
    def closes(self) -> List[float]:
        return [c.close for c in self.candles if c.close is not None]

    @property
    def current_price(self) -> Optional[float]:
        price = self.indicators.get("current_price")
        if price is None and self.candles:
            price = self.candles[-1].close
        return price

    @property
    def price_change_24h(self) -> Optional[float]:
        return self.indicators.get("price_change_24h")


# =============================================================================
# Decision Models
# =============================================================================

class GateAnnotation(BaseModel):
    """A gate's verdict on a decision, kept for the audit trail."""
    model_config = ConfigDict(frozen=True)

    gate: str
    verdict: GateVerdict
    reason: str = ""
    metrics: Dict[str, Any] = Field(default_factory=dict)


class Decision(BaseModel):
    """A proposed trading action.

    Decisions are immutable. Every gate produces a new Decision through
    ``resize``, ``annotate`` or ``forced_hold``, appending a GateAnnotation,
    so the raw model output is never lost. A HOLD always carries zero size.
    """
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    action: TradeAction = Field(..., description="Proposed action")
    symbol: str = Field(..., description="Trading pair symbol")
    size_usd: Decimal = Field(default=Decimal("0"), ge=0, description="Notional size")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    rationale: str = Field(default="", description="Short human-readable reason")
    leverage: Optional[Decimal] = Field(default=None)
    source: ModelSource = Field(..., description="Producing model")
    annotations: Tuple[GateAnnotation, ...] = Field(default=())

    @model_validator(mode="before")
    @classmethod
    def hold_has_no_size(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("action") == TradeAction.HOLD:
            data = {**data, "size_usd": Decimal("0")}
        return data

    @property
    def is_hold(self) -> bool:
        return self.action == TradeAction.HOLD

    def _evolve(self, annotation: GateAnnotation, **changes: Any) -> "Decision":
        values = {name: getattr(self, name) for name in type(self).model_fields}
        values.update(changes)
        values["annotations"] = self.annotations + (annotation,)
        return type(self)(**values)

    def annotate(
        self,
        gate: str,
        verdict: GateVerdict,
        reason: str = "",
        **metrics: Any,
    ) -> "Decision":
        """Record a verdict without changing the action or size."""
        return self._evolve(
            GateAnnotation(gate=gate, verdict=verdict, reason=reason, metrics=metrics)
        )

    def resize(self, size_usd: Any, gate: str, reason: str = "", **metrics: Any) -> "Decision":
        """Return a copy with a new size."""
        new_size = to_usd(max(Decimal("0"), to_usd(size_usd)))
        metrics.setdefault("previous_size_usd", str(self.size_usd))
        metrics.setdefault("new_size_usd", str(new_size))
        return self._evolve(
            GateAnnotation(
                gate=gate, verdict=GateVerdict.RESIZE, reason=reason, metrics=metrics
            ),
            size_usd=new_size,
        )

    def forced_hold(
        self,
        gate: str,
        reason: str,
        tag: Optional[str] = None,
        verdict: GateVerdict = GateVerdict.DENY,
        **metrics: Any,
    ) -> "Decision":
        """Return a zero-size HOLD, appending ``[TAG: reason]`` to the rationale."""
        rationale = self.rationale
        if tag:
            rationale = f"{rationale} [{tag}: {reason}]"
        return self._evolve(
            GateAnnotation(gate=gate, verdict=verdict, reason=reason, metrics=metrics),
            action=TradeAction.HOLD,
            size_usd=Decimal("0"),
            rationale=rationale,
        )

    def verdicts(self) -> List[Dict[str, Any]]:
        """Annotations as JSON-friendly dicts."""
        return [a.model_dump(mode="json") for a in self.annotations]


class MLPrediction(BaseModel):
    """Result from the statistical prediction service."""

    success: bool
    action: TradeAction = TradeAction.HOLD
    confidence: float = 0.0
    probability: Optional[float] = None
    should_execute: bool = False
    model_version: Optional[str] = None
    model_type: str = "global"
    latency_ms: float = 0.0
    error: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def unavailable(cls, error: str, latency_ms: float = 0.0) -> "MLPrediction":
        return cls(success=False, error=error, latency_ms=latency_ms)


class ModelChoice(BaseModel):
    """Which model the arbitrator picked and why."""

    use_ml: bool
    reason: str


class ArbitrationOutcome(BaseModel):
    """Raw decision plus the provenance of the model choice."""

    decision: Decision
    source: ModelSource
    reason: str
    ml_prediction: Optional[MLPrediction] = None
    llm_latency_ms: Optional[float] = None
    llm_called: bool = False
    model_versions: List[str] = Field(default_factory=list)
    raw_responses: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Persistence Models
# =============================================================================

class DecisionRecord(BaseModel):
    """The audit record written once per pipeline pass."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: Optional[int] = None
    user_id: str
    strategy_id: str
    decided_at: datetime = Field(default_factory=datetime.utcnow)
    market_snapshot: Dict[str, Any] = Field(default_factory=dict)
    orderbook_snapshot: Optional[Dict[str, Any]] = None
    technical_indicators: Dict[str, Any] = Field(default_factory=dict)
    portfolio_state: Dict[str, Any] = Field(default_factory=dict)
    model_versions: List[str] = Field(default_factory=list)
    raw_responses: Dict[str, Any] = Field(default_factory=dict)
    raw_decision: Decision
    final_decision: Decision
    confidence_final: float = 0.0
    model_decision_metadata: Dict[str, Any] = Field(default_factory=dict)
    signal_sent: bool = False


class TradeIdea(BaseModel):
    """A published high-confidence idea with protective levels."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: Optional[int] = None
    user_id: str
    strategy_id: str
    symbol: str
    action: TradeAction
    confidence_pct: float
    reasoning: str = ""
    entry_price: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    exchange: str
    trade_size_usd: Decimal = Decimal("10")
    status: str = "active"
    expires_at: datetime
    technical_indicators: Dict[str, Any] = Field(default_factory=dict)
    market_snapshot: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Dispatch Models
# =============================================================================

class DispatchResult(BaseModel):
    """Outcome of a single webhook call."""

    success: bool
    status_code: Optional[int] = None
    response: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0


class TWAPResult(BaseModel):
    """Aggregate outcome of a sliced execution."""

    success: bool
    slices_total: int
    slices_executed: int
    avg_price: Optional[float] = None
    results: List[DispatchResult] = Field(default_factory=list)
