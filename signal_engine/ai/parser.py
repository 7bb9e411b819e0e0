"""Parse a reasoning-model response into a Decision."""
import json
import re
from decimal import Decimal
from typing import Any, Dict

from signal_engine.core.exceptions import DecisionParseError
from signal_engine.core.models import Decision, ModelSource, TradeAction, to_usd
from signal_engine.core.strategy_config import normalize_symbol

MAX_SIZE_USD = Decimal("100000")
MAX_RATIONALE_CHARS = 100

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _extract_json(raw: str) -> Dict[str, Any]:
    text = _FENCE_RE.sub("", raw or "").strip()
    match = _OBJECT_RE.search(text)
    if not match:
        raise DecisionParseError("No JSON object in response", raw)
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise DecisionParseError(f"Invalid JSON: {e}", raw) from e
    if not isinstance(data, dict):
        raise DecisionParseError("Response JSON is not an object", raw)
    return data


def _number(data: Dict[str, Any], keys, raw: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            value = data[key]
            try:
                return Decimal(str(value))
            except ArithmeticError as e:
                raise DecisionParseError(f"Non-numeric {key}: {value!r}", raw) from e
    if default is None:
        raise DecisionParseError(f"Missing field: {keys[0]}", raw)
    return default


def parse_decision(
    raw: str, default_symbol: str, source: ModelSource = ModelSource.LLM
) -> Decision:
    """Strict parse with clamping.

    Raises DecisionParseError for a non-JSON body, a missing or unknown
    action, or a non-numeric size or confidence. Out-of-range numbers are
    clamped rather than rejected.
    """
    data = _extract_json(raw)

    action_value = str(data.get("action") or "").strip().upper()
    if not action_value:
        raise DecisionParseError("Missing field: action", raw)
    try:
        action = TradeAction(action_value)
    except ValueError as e:
        raise DecisionParseError(f"Unknown action: {action_value}", raw) from e

    size = _number(data, ("size_usd", "size"), raw, default=Decimal("0"))
    confidence = _number(data, ("confidence",), raw)
    if not size.is_finite() or not confidence.is_finite():
        raise DecisionParseError("Non-finite size or confidence", raw)

    symbol = data.get("symbol")
    symbol = normalize_symbol(symbol) if isinstance(symbol, str) and symbol.strip() else default_symbol

    rationale = str(data.get("reasoning") or data.get("rationale") or "")[:MAX_RATIONALE_CHARS]

    return Decision(
        action=action,
        symbol=symbol,
        size_usd=to_usd(min(max(size, Decimal("0")), MAX_SIZE_USD)),
        confidence=float(min(max(confidence, Decimal("0")), Decimal("1"))),
        rationale=rationale,
        source=source,
    )
