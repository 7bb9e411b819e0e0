"""Technical indicators computed from a validated candle series."""
import math
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from signal_engine.core.models import Candle

MINUTES_PER_DAY = 1440


def _clean(value: Any) -> Optional[float]:
    """NaN/inf -> None, numpy scalars -> float."""
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _sma(series: pd.Series, period: int) -> Optional[float]:
    if len(series) < period:
        return None
    return _clean(series.iloc[-period:].mean())


def _ema_series(series: pd.Series, period: int) -> pd.Series:
    """EMA seeded with the SMA of the first ``period`` values."""
    if len(series) < period:
        return pd.Series(np.nan, index=series.index)
    seeded = series.astype(float).copy()
    seeded.iloc[: period - 1] = np.nan
    seeded.iloc[period - 1] = series.iloc[:period].mean()
    return seeded.ewm(span=period, adjust=False).mean()


def _rsi(closes: pd.Series, period: int = 14) -> Optional[float]:
    if len(closes) < period + 1:
        return None
    deltas = closes.iloc[-(period + 1):].diff().dropna()
    avg_gain = deltas.clip(lower=0).sum() / period
    avg_loss = -deltas.clip(upper=0).sum() / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return _clean(100 - 100 / (1 + rs))


def _atr(frame: pd.DataFrame, period: int = 14) -> Optional[float]:
    if len(frame) < period + 1:
        return None
    prev_close = frame["close"].shift(1)
    true_range = pd.concat(
        [
            frame["high"] - frame["low"],
            (frame["high"] - prev_close).abs(),
            (frame["low"] - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)
    return _clean(true_range.iloc[-period:].mean())


def _adx(frame: pd.DataFrame, period: int = 14) -> Optional[float]:
    """Simplified directional strength: |avg up move - avg down move| / sum."""
    if len(frame) < period + 1:
        return None
    recent = frame.iloc[-(period + 1):]
    high_diff = recent["high"].diff().dropna()
    low_diff = (-recent["low"].diff()).dropna()
    avg_high = high_diff.mean()
    avg_low = low_diff.mean()
    total = avg_high + avg_low
    if total == 0:
        return 0.0
    return _clean(abs(avg_high - avg_low) / total * 100)


def calculate_indicators(candles: List[Candle]) -> Dict[str, Any]:
    """Compute the indicator set used by prompts, features and sizing.

    Values that need more history than available are ``None``.
    """
    frame = pd.DataFrame(
        [
            {
                "time": c.time,
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume or 0.0,
            }
            for c in candles
        ]
    )
    closes = frame["close"].astype(float)
    volumes = frame["volume"].astype(float)
    current_price = float(closes.iloc[-1])

    indicators: Dict[str, Any] = {
        "current_price": current_price,
        "candle_count": len(frame),
        "timestamp": int(frame["time"].iloc[-1]) if frame["time"].iloc[-1] is not None else None,
    }

    for period in (5, 10, 20, 50, 100):
        indicators[f"sma{period}"] = _sma(closes, period)

    ema12 = _ema_series(closes, 12)
    ema26 = _ema_series(closes, 26)
    indicators["ema12"] = _clean(ema12.iloc[-1])
    indicators["ema26"] = _clean(ema26.iloc[-1])

    macd_line = (ema12 - ema26).dropna()
    indicators["macd"] = _clean(macd_line.iloc[-1]) if not macd_line.empty else None
    signal_line = _ema_series(macd_line.reset_index(drop=True), 9) if len(macd_line) >= 9 else None
    macd_signal = _clean(signal_line.iloc[-1]) if signal_line is not None else None
    indicators["macd_signal"] = macd_signal
    indicators["macd_histogram"] = (
        indicators["macd"] - macd_signal
        if indicators["macd"] is not None and macd_signal is not None
        else None
    )

    indicators["rsi"] = _rsi(closes, 14)

    # Bollinger bands, population standard deviation
    if len(closes) >= 20:
        window = closes.iloc[-20:]
        middle = float(window.mean())
        std = float(window.std(ddof=0))
        upper = middle + 2 * std
        lower = middle - 2 * std
        indicators.update(
            bb_upper=upper,
            bb_middle=middle,
            bb_lower=lower,
            bb_percent=(current_price - lower) / (upper - lower) if upper != lower else 0.5,
        )
    else:
        indicators.update(bb_upper=None, bb_middle=None, bb_lower=None, bb_percent=None)

    atr = _atr(frame, 14)
    indicators["atr"] = atr
    indicators["atr_percent"] = atr / current_price * 100 if atr is not None else None

    returns = closes.pct_change().dropna()
    if len(returns) >= 20:
        indicators["realized_volatility"] = _clean(
            returns.iloc[-20:].std(ddof=0) * math.sqrt(MINUTES_PER_DAY) * 100
        )
    else:
        indicators["realized_volatility"] = None

    volume_sma20 = _sma(volumes, 20)
    indicators["volume_sma20"] = volume_sma20
    indicators["current_volume"] = float(volumes.iloc[-1])
    indicators["volume_ratio"] = (
        float(volumes.iloc[-1]) / volume_sma20 if volume_sma20 else None
    )
    direction = np.sign(closes.diff().fillna(0))
    indicators["obv"] = _clean((direction * volumes).sum())

    indicators["adx"] = _adx(frame, 14)

    sma20, sma50 = indicators["sma20"], indicators["sma50"]
    indicators["price_above_sma20"] = sma20 is not None and current_price > sma20
    indicators["price_above_sma50"] = sma50 is not None and current_price > sma50
    indicators["sma20_above_sma50"] = sma20 is not None and sma50 is not None and sma20 > sma50

    reference = closes.iloc[-MINUTES_PER_DAY - 1] if len(closes) > MINUTES_PER_DAY else closes.iloc[0]
    indicators["price_change_24h"] = (
        _clean((current_price - reference) / reference * 100) if reference else None
    )

    return indicators
