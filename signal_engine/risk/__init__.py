"""Risk management for AI decisions.

This module provides:
- Sizing cascade (risk profile, Kelly, volatility, costs, correlation)
- Portfolio limits and the daily trade limit
- Drawdown circuit breaker
- Generic risk check
"""

from signal_engine.risk.risk_manager import (
    FailureMode,
    GateContext,
    RiskCheckResult,
    RiskLevel,
    RiskManager,
    RiskRule,
    SizingStep,
)

__all__ = [
    'FailureMode',
    'GateContext',
    'RiskCheckResult',
    'RiskLevel',
    'RiskManager',
    'RiskRule',
    'SizingStep',
]
