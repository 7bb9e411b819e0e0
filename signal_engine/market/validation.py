"""Data-quality checks applied to candle series before indicators are computed."""
import math
import time
from dataclasses import dataclass, field
from typing import List, Optional

from signal_engine.core.models import Candle

MIN_CANDLES = 50
REQUIRED_FIELDS = ("time", "open", "high", "low", "close", "volume")
MAX_STALENESS_SECONDS = 5 * 60
SUSPICIOUS_MOVE_PCT = 50.0


@dataclass
class ValidationResult:
    """Outcome of validating one candle series.

    Attributes:
        valid: Whether the series may be used for decisions
        errors: Reasons the series was rejected
        warnings: Anomalies that do not reject the series
    """
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _to_seconds(timestamp: int) -> float:
    # Venues report either seconds or milliseconds
    return timestamp / 1000 if timestamp > 1e12 else float(timestamp)


def validate_market_data(candles: List[Candle], now: Optional[float] = None) -> ValidationResult:
    """Check count, completeness, price sanity, ordering and freshness.

    ``now`` is a unix timestamp in seconds and defaults to the current time.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not candles or len(candles) < MIN_CANDLES:
        return ValidationResult(
            valid=False,
            errors=[f"Insufficient candles: {len(candles or [])} < {MIN_CANDLES}"],
        )

    for candle in candles[-10:]:
        missing = [name for name in REQUIRED_FIELDS if getattr(candle, name) is None]
        if missing:
            errors.append(f"Candle {candle.time} missing fields: {', '.join(missing)}")
    if errors:
        return ValidationResult(valid=False, errors=errors)

    for candle in candles:
        prices = (candle.open, candle.high, candle.low, candle.close)
        if any(p is None or not math.isfinite(p) or p <= 0 for p in prices):
            errors.append(f"Invalid price in candle {candle.time}")
            continue
        if candle.high < candle.low:
            errors.append(f"High < low in candle {candle.time}")
        elif not candle.low <= candle.close <= candle.high:
            errors.append(f"Close outside [low, high] in candle {candle.time}")

    times = [c.time for c in candles if c.time is not None]
    if any(later <= earlier for earlier, later in zip(times, times[1:])):
        errors.append("Candle timestamps are not strictly increasing")

    if errors:
        return ValidationResult(valid=False, errors=errors, warnings=warnings)

    now = time.time() if now is None else now
    age = now - _to_seconds(candles[-1].time)
    if age > MAX_STALENESS_SECONDS:
        errors.append(f"Stale data: last candle is {age / 60:.1f} minutes old")

    closes = [c.close for c in candles]
    for prev, curr in zip(closes, closes[1:]):
        change = abs(curr - prev) / prev * 100
        if change > SUSPICIOUS_MOVE_PCT:
            warnings.append(f"Suspicious price move of {change:.1f}%")
            break

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
