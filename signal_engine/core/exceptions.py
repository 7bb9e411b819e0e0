"""Exception types raised inside the decision pipeline.

Policy denials are never exceptions; gates express them as HOLD decisions.
These cover the failures that abort a strategy pass or a service call.
"""
from typing import Optional


class SignalEngineError(Exception):
    """Base class for signal engine errors."""


class NoValidMarketDataError(SignalEngineError):
    """Raised when no target asset produced usable market data."""

    def __init__(self, strategy_id: str, assets: Optional[list] = None):
        self.strategy_id = strategy_id
        self.assets = assets or []
        super().__init__(
            f"No valid market data for strategy {strategy_id} (assets: {', '.join(self.assets)})"
        )


class ReasoningServiceError(SignalEngineError):
    """The reasoning service returned nothing usable."""


class DecisionParseError(ValueError):
    """A model response could not be parsed into a Decision."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class DispatchRejectedError(SignalEngineError):
    """The gateway answered with a non-2xx status or ``success: false``.

    Rejections are terminal and are not retried.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[dict] = None):
        self.status_code = status_code
        self.body = body or {}
        super().__init__(message)
