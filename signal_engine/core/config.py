"""Configuration management for the AI signal engine."""

from decimal import Decimal
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )
    app_name: str = Field(default="AI Signal Engine")
    app_version: str = Field(default="1.0.0")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )


# =============================================================================
# Worker Configuration
# =============================================================================


class WorkerConfig(BaseSettings):
    """Decision cycle cadence and market data settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Cycle cadence
    cycle_interval_seconds: float = Field(default=45.0)
    strategy_pause_seconds: float = Field(default=1.0)
    metrics_log_every_cycles: int = Field(default=10)

    # Market data
    candle_timeframe: str = Field(default="1m")
    candle_limit: int = Field(default=100)
    order_book_depth: int = Field(default=10)
    default_exchange: str = Field(default="binance")
    # ccxt id used when a strategy's venue is not a ccxt exchange
    market_data_exchange: str = Field(default="binance")
    fetch_max_retries: int = Field(default=2)
    fetch_base_delay: float = Field(default=1.0)

    # Trade ideas
    idea_min_confidence: float = Field(default=0.70)

    @field_validator("cycle_interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("cycle_interval_seconds must be positive")
        return v


# =============================================================================
# Model Service Configuration
# =============================================================================


class MLServiceConfig(BaseSettings):
    """Statistical prediction service settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    ml_service_url: str = Field(default="http://localhost:8001")
    ml_timeout_seconds: float = Field(default=5.0)
    ml_max_attempts: int = Field(default=2)
    ml_retry_delay: float = Field(default=0.5)
    ml_health_timeout_seconds: float = Field(default=2.0)
    ml_base_size_usd: Decimal = Field(default=Decimal("1000"))


class LLMConfig(BaseSettings):
    """Reasoning (LLM) service settings. Groq exposes an OpenAI compatible API."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    groq_api_key: str = Field(default="")
    llm_base_url: str = Field(default="https://api.groq.com/openai/v1")
    llm_model: str = Field(default="llama-3.1-70b-versatile")
    llm_temperature: float = Field(default=0.2)
    llm_max_tokens: int = Field(default=400)
    llm_max_retries: int = Field(default=2)
    llm_base_delay: float = Field(default=2.0)
    llm_call_cost_usd: Decimal = Field(default=Decimal("0.0001"))


# =============================================================================
# Webhook Configuration
# =============================================================================


class WebhookConfig(BaseSettings):
    """Execution gateway webhook settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    webhook_url: str = Field(default="")
    webhook_timeout_seconds: float = Field(default=10.0)
    webhook_max_retries: int = Field(default=2)
    webhook_base_delay: float = Field(default=2.0)
    webhook_source: str = Field(default="ai_engine_v1")
    twap_source: str = Field(default="ai_twap")


# =============================================================================
# Risk Configuration
# =============================================================================


class RiskConfig(BaseSettings):
    """Process-wide risk limits shared by every strategy."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Equity used for volatility sizing and portfolio share calculations
    account_balance_usd: Decimal = Field(default=Decimal("10000"))

    # Portfolio limits
    max_open_positions: int = Field(default=10)
    max_symbol_pct: float = Field(default=0.20)
    max_correlated_pct: float = Field(default=0.50)
    correlated_group: List[str] = Field(default=["BTC", "ETH", "BNB"])

    # Kelly sizing
    kelly_min_trades: int = Field(default=30)
    kelly_lookback: int = Field(default=100)
    kelly_min_pct: float = Field(default=0.005)
    kelly_max_pct: float = Field(default=0.10)

    # Costs
    default_slippage_bps: float = Field(default=5.0)
    opportunity_cost_bps: float = Field(default=1.0)

    # Drawdown breaker
    drawdown_warning_band: float = Field(default=0.05)

    # Generic risk check
    large_position_warning_usd: Decimal = Field(default=Decimal("100000"))
    large_loss_threshold_usd: Decimal = Field(default=Decimal("-500"))
    large_loss_count: int = Field(default=3)
    consecutive_loss_count: int = Field(default=5)
    max_daily_loss_usd: Decimal = Field(default=Decimal("-1000"))
    default_max_drawdown_percent: float = Field(default=20.0)
    default_leverage_max: int = Field(default=10)


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    database_url: str = Field(default="sqlite:///./data/signal_engine.db")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_file: str = Field(default="logs/signal_engine.log")


# =============================================================================
# Global Configuration Container
# =============================================================================


class SignalEngineConfig:
    """
    Container for all signal engine configurations.

    Usage:
        from signal_engine.core.config import engine_config

        interval = engine_config.worker.cycle_interval_seconds
        report = engine_config.validate_configuration()
    """

    SUPPORTED_DB_SCHEMES = ("sqlite", "sqlite+aiosqlite", "postgresql+asyncpg")

    def __init__(self):
        self.system = SystemConfig()
        self.worker = WorkerConfig()
        self.ml = MLServiceConfig()
        self.llm = LLMConfig()
        self.webhook = WebhookConfig()
        self.risk = RiskConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_production(self) -> bool:
        return self.system.environment == "production"

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if not self.llm.groq_api_key or self.llm.groq_api_key.startswith("your_"):
            issues.append("Missing GROQ_API_KEY for the reasoning service")

        if not self.webhook.webhook_url:
            issues.append("Missing WEBHOOK_URL for signal dispatch")

        scheme = self.database.database_url.split("://", 1)[0]
        if "://" not in self.database.database_url or scheme not in self.SUPPORTED_DB_SCHEMES:
            issues.append(f"Unsupported database URL scheme: {scheme}")

        if self.worker.cycle_interval_seconds <= 0:
            issues.append("Cycle interval must be positive")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

worker_config = WorkerConfig()
ml_config = MLServiceConfig()
llm_config = LLMConfig()
webhook_config = WebhookConfig()
risk_config = RiskConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

engine_config = SignalEngineConfig()


__all__ = [
    "SignalEngineConfig",
    "engine_config",
    "SystemConfig",
    "WorkerConfig",
    "MLServiceConfig",
    "LLMConfig",
    "WebhookConfig",
    "RiskConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "worker_config",
    "ml_config",
    "llm_config",
    "webhook_config",
    "risk_config",
    "database_config",
    "logging_config",
]
