"""Prompt construction for the reasoning model."""
import json
from typing import List

from signal_engine.core.models import MarketSnapshot, OpenPosition, Strategy
from signal_engine.core.strategy_config import StrategyConfig

SYSTEM_PROMPT = (
    "You are an elite crypto quant trader. "
    "Return only valid JSON, no markdown, no explanation."
)

PROMPT_CANDLES = 10


def _fmt(value, digits: int = 2) -> str:
    return f"{value:.{digits}f}" if isinstance(value, (int, float)) else "N/A"


def summarize_positions(positions: List[OpenPosition]) -> str:
    if not positions:
        return "No open positions"
    return "\n".join(
        f"{p.symbol}: {p.side.value} {p.quantity} @ ${p.entry_price} "
        f"(P&L: ${p.unrealized_pnl_usd})"
        for p in positions
    )


def build_prompt(
    strategy: Strategy,
    config: StrategyConfig,
    snapshot: MarketSnapshot,
    positions: List[OpenPosition],
) -> str:
    """User prompt describing strategy limits, market state and the answer contract."""
    ind = snapshot.indicators
    recent = [
        {"t": c.time, "o": c.open, "h": c.high, "l": c.low, "c": c.close, "v": c.volume}
        for c in snapshot.candles[-PROMPT_CANDLES:]
    ]
    max_drawdown = strategy.max_drawdown_percent if strategy.max_drawdown_percent is not None else 20
    leverage = strategy.leverage_max if strategy.leverage_max is not None else 10

    sections = [
        "You are managing an automated crypto strategy.",
        "",
        "STRATEGY:",
        f"- Risk profile: {strategy.risk_profile.value} ({config.risk_profile_value:.0f}/100)",
        f"- Max drawdown: {max_drawdown}%",
        f"- Max leverage: {leverage}x",
        f"- Target assets: {', '.join(config.target_assets)}",
        "",
        "OPEN POSITIONS:",
        summarize_positions(positions),
        "",
        f"MARKET ({snapshot.symbol}):",
        f"- Current price: ${_fmt(snapshot.current_price)}",
        f"- SMA20: {_fmt(ind.get('sma20'))}",
        f"- SMA50: {_fmt(ind.get('sma50'))}",
        f"- RSI(14): {_fmt(ind.get('rsi'), 1)}",
        f"- 24h change: {_fmt(snapshot.price_change_24h)}%",
        "",
        f"LAST {PROMPT_CANDLES} CANDLES (1m):",
        json.dumps(recent),
    ]

    if config.custom_prompt:
        sections += [
            "",
            "--- CUSTOM TRADING INSTRUCTIONS ---",
            config.custom_prompt.strip(),
            "--- END CUSTOM INSTRUCTIONS ---",
        ]

    sections += [
        "",
        "INSTRUCTIONS:",
        "1. Analyze trend, momentum and volatility from the data above.",
        "2. Decide one action: LONG, SHORT, CLOSE or HOLD.",
        "3. Size the trade in USD consistent with the risk profile.",
        "4. Give a confidence between 0 and 1.",
        "5. Keep reasoning under 100 characters.",
        "",
        "RISK RULES:",
        "- If RSI > 70, avoid LONG.",
        "- If RSI < 30, avoid SHORT.",
        "- Prefer HOLD when signals conflict.",
        "- Never exceed the max leverage or drawdown limits.",
        "",
        "Respond with JSON only:",
        '{"action": "LONG|SHORT|CLOSE|HOLD", "symbol": "BTCUSDT", '
        '"size_usd": 0, "confidence": 0.0, "reasoning": "short reason"}',
    ]
    return "\n".join(sections)
