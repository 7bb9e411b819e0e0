"""Counters and latency samples for the decision worker."""
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict

LATENCY_WINDOW = 100


class CycleMetrics:
    """Counters owned by the scheduler and updated by each pipeline pass.

    Latency samples are kept in bounded windows of the most recent
    ``LATENCY_WINDOW`` calls per model source.
    """

    def __init__(self, latency_window: int = LATENCY_WINDOW):
        self.cycles = 0
        self.strategies_processed = 0
        self.signals_sent = 0
        self.holds = 0
        self.errors = 0
        self.ml_calls = 0
        self.llm_calls = 0
        self.ml_decisions = 0
        self.llm_decisions = 0
        self.cost_savings_usd = Decimal("0")
        self.ml_latency_ms: Deque[float] = deque(maxlen=latency_window)
        self.llm_latency_ms: Deque[float] = deque(maxlen=latency_window)

    def record_ml_call(self, latency_ms: float) -> None:
        self.ml_calls += 1
        self.ml_latency_ms.append(latency_ms)

    def record_llm_call(self, latency_ms: float) -> None:
        self.llm_calls += 1
        self.llm_latency_ms.append(latency_ms)

    def record_ml_decision(self, saved_cost_usd: Decimal) -> None:
        """An ML decision avoided one reasoning call."""
        self.ml_decisions += 1
        self.cost_savings_usd += saved_cost_usd

    def record_llm_decision(self) -> None:
        self.llm_decisions += 1

    @staticmethod
    def _average(samples: Deque[float]) -> float:
        return sum(samples) / len(samples) if samples else 0.0

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time view suitable for logging or a status endpoint."""
        decisions = self.ml_decisions + self.llm_decisions
        return {
            "cycles": self.cycles,
            "strategies_processed": self.strategies_processed,
            "signals_sent": self.signals_sent,
            "holds": self.holds,
            "errors": self.errors,
            "ml_calls": self.ml_calls,
            "llm_calls": self.llm_calls,
            "ml_decisions": self.ml_decisions,
            "llm_decisions": self.llm_decisions,
            "ml_usage_pct": round(self.ml_decisions / decisions * 100, 1) if decisions else 0.0,
            "avg_ml_latency_ms": round(self._average(self.ml_latency_ms), 1),
            "avg_llm_latency_ms": round(self._average(self.llm_latency_ms), 1),
            "cost_savings_usd": str(self.cost_savings_usd),
        }
