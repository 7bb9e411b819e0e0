"""AI Signal Engine - autonomous decision core for multi-tenant AI trading strategies."""

__version__ = "1.0.0"
