"""Per-strategy effective configuration.

A strategy's settings live in two places: the free-form override object
(``strategy.config``) and the flat legacy columns. ``normalize_config`` folds
both into one frozen ``StrategyConfig`` once per pipeline pass, so no stage
re-reads the raw strategy row.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from signal_engine.core.config import worker_config
from signal_engine.core.models import RiskProfile, Strategy, UsageMode

logger = structlog.get_logger(__name__)

DEFAULT_TARGET_ASSETS = ("BTCUSDT",)

PROFILE_CONFIDENCE_DEFAULTS = {
    RiskProfile.CONSERVATIVE: 0.80,
    RiskProfile.BALANCED: 0.70,
    RiskProfile.AGGRESSIVE: 0.60,
}


class StrategyConfig(BaseModel):
    """Effective settings for one strategy pass."""
    model_config = ConfigDict(frozen=True)

    strategy_id: str
    target_assets: Tuple[str, ...]
    blacklist: Tuple[str, ...] = ()
    whitelist: Tuple[str, ...] = ()
    exchange: str

    # Arbitration
    confidence_threshold: float
    usage_mode: UsageMode = UsageMode.HYBRID
    llm_percent: float = 20.0

    # Prompting / sizing
    risk_profile_value: float = 50.0
    custom_prompt: Optional[str] = None
    kelly_fraction: float = 0.25

    # Volatility sizing
    use_volatility_sizing: bool = False
    risk_per_trade: float = 0.01
    atr_multiplier: float = 2.0

    # Cost screen
    skip_high_cost_trades: bool = False
    max_cost_bps: float = 50.0
    include_slippage_estimate: bool = True

    # Smart routing
    use_smart_routing: bool = False
    twap_threshold_usd: Decimal = Decimal("10000")
    twap_duration_min: float = 5.0
    twap_slices: int = 5

    # Correlation screen
    enforce_correlation_limits: bool = False
    max_correlation: float = 0.70
    max_correlated_exposure: float = 0.50

    # Limits
    daily_trade_limit: Optional[int] = None
    drawdown_limit: float = 0.20

    @property
    def filtered_assets(self) -> List[str]:
        """Targets minus the blacklist, restricted to the whitelist if any."""
        assets = [a for a in self.target_assets if a not in self.blacklist]
        if self.whitelist:
            assets = [a for a in assets if a in self.whitelist]
        return assets


def normalize_symbol(symbol: str) -> str:
    """``BTC/USDT:PERP`` / ``btc-perp`` style symbols -> ``BTCUSDT``."""
    cleaned = symbol.strip().upper()
    for suffix in (":PERP", "-PERP"):
        if cleaned.endswith(suffix):
            cleaned = cleaned[: -len(suffix)]
    return cleaned.replace("/", "").replace(":", "")


def _pick(*values: Any, default: Any = None) -> Any:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return default


_FLAG = TypeAdapter(bool)


def _flag(value: Any, default: bool, key: str, strategy_id: str) -> bool:
    """Parse a boolean setting; ``"false"``, ``"0"`` and ``"off"`` are False."""
    try:
        return _FLAG.validate_python(value)
    except ValidationError:
        logger.warning(
            "strategy_config.invalid_flag",
            strategy_id=strategy_id,
            key=key,
            value=value,
        )
        return default


def _symbols(raw: Any) -> Tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    return tuple(normalize_symbol(s) for s in raw if isinstance(s, str) and s.strip())


def normalize_config(strategy: Strategy) -> StrategyConfig:
    """Fold the override object and legacy columns into a StrategyConfig.

    Precedence is override object, then flat column, then default. ``None``
    means unset, so an explicit ``0`` or ``False`` is honoured.
    """
    overrides: Dict[str, Any] = strategy.config or {}
    hybrid = overrides.get("hybrid_mode") or {}

    targets = _symbols(overrides.get("target_assets")) or _symbols(strategy.target_assets)
    if not targets:
        targets = DEFAULT_TARGET_ASSETS

    threshold = _pick(
        overrides.get("confidence_threshold"),
        strategy.ml_confidence_threshold,
        default=PROFILE_CONFIDENCE_DEFAULTS[strategy.risk_profile],
    )

    raw_mode = _pick(hybrid.get("type"), strategy.llm_usage_mode, default=UsageMode.HYBRID.value)
    try:
        usage_mode = UsageMode(raw_mode)
    except ValueError:
        logger.warning(
            "strategy_config.unknown_usage_mode",
            strategy_id=strategy.id,
            mode=raw_mode,
        )
        usage_mode = UsageMode.HYBRID

    daily_limit = overrides.get("daily_trade_limit")
    if daily_limit is not None and int(daily_limit) <= 0:
        daily_limit = None

    def setting(key: str, default: Any) -> Any:
        return _pick(overrides.get(key), getattr(strategy, key, None), default=default)

    def flag(key: str, default: bool) -> bool:
        return _flag(setting(key, default), default, key, strategy.id)

    return StrategyConfig(
        strategy_id=strategy.id,
        target_assets=targets,
        blacklist=_symbols(overrides.get("blacklist")),
        whitelist=_symbols(overrides.get("whitelist")),
        exchange=_pick(overrides.get("exchange"), strategy.exchange, default=worker_config.default_exchange),
        confidence_threshold=float(threshold),
        usage_mode=usage_mode,
        llm_percent=float(_pick(hybrid.get("llm_percent"), strategy.llm_usage_percent, default=20)),
        risk_profile_value=float(_pick(overrides.get("risk_profile_value"), default=50)),
        custom_prompt=overrides.get("custom_prompt") or None,
        kelly_fraction=float(_pick(overrides.get("kelly_fraction"), default=0.25)),
        use_volatility_sizing=flag("use_volatility_sizing", False),
        risk_per_trade=float(setting("risk_per_trade", 0.01)),
        atr_multiplier=float(setting("atr_multiplier", 2.0)),
        skip_high_cost_trades=flag("skip_high_cost_trades", False),
        max_cost_bps=float(setting("max_cost_bps", 50)),
        include_slippage_estimate=flag("include_slippage_estimate", True),
        use_smart_routing=flag("use_smart_routing", False),
        twap_threshold_usd=Decimal(str(setting("twap_threshold_usd", 10000))),
        twap_duration_min=float(setting("twap_duration_min", 5)),
        twap_slices=max(1, int(setting("twap_slices", 5))),
        enforce_correlation_limits=flag("enforce_correlation_limits", False),
        max_correlation=float(setting("max_correlation", 0.70)),
        max_correlated_exposure=float(setting("max_correlated_exposure", 0.50)),
        daily_trade_limit=int(daily_limit) if daily_limit is not None else None,
        drawdown_limit=float(_pick(overrides.get("drawdown_limit"), default=0.20)),
    )
