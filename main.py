"""
AI Signal Engine - Main Entry Point

Runs the autonomous decision worker: every cycle, each running strategy is
taken through market data, model arbitration, risk gating and dispatch.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Run a single cycle and exit
    python main.py --once

    # Show active strategies and metrics
    python main.py --status

    # Run until SIGINT/SIGTERM
    python main.py
"""

import argparse
import asyncio
import signal
from datetime import datetime
from typing import Dict, Optional

import structlog

from signal_engine.ai.arbitrator import ModelArbitrator
from signal_engine.ai.llm_client import ReasoningClient
from signal_engine.ai.ml_client import MLServiceClient
from signal_engine.core.config import engine_config
from signal_engine.core.pipeline import DecisionPipeline
from signal_engine.core.scheduler import CycleScheduler
from signal_engine.execution.dispatcher import Dispatcher
from signal_engine.market.data import MarketDataClient
from signal_engine.risk.risk_manager import RiskManager
from signal_engine.storage.database import Database
from signal_engine.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class SignalWorker:
    """
    Wires the decision worker together and owns its lifecycle.

    Every external client is created here and closed on shutdown.
    """

    def __init__(self):
        self.database: Optional[Database] = None
        self.market_data: Optional[MarketDataClient] = None
        self.ml_client: Optional[MLServiceClient] = None
        self.llm_client: Optional[ReasoningClient] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.scheduler: Optional[CycleScheduler] = None

        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Create all components and check the prediction service once."""
        logger.info(
            "worker.initializing",
            environment=engine_config.system.environment,
            interval_seconds=engine_config.worker.cycle_interval_seconds,
        )

        self.database = Database(engine_config.database.database_url)
        await self.database.initialize()
        logger.info("worker.database_initialized")

        self.market_data = MarketDataClient(engine_config.worker)
        self.ml_client = MLServiceClient(engine_config.ml)
        self.llm_client = ReasoningClient(engine_config.llm)
        self.dispatcher = Dispatcher(self.database, engine_config.webhook)

        ml_healthy = await self.ml_client.check_health()
        logger.info("worker.ml_service_health", healthy=ml_healthy, url=engine_config.ml.ml_service_url)

        arbitrator = ModelArbitrator(
            self.database, self.ml_client, self.llm_client, engine_config.llm
        )
        pipeline = DecisionPipeline(
            database=self.database,
            market_data=self.market_data,
            arbitrator=arbitrator,
            risk_manager=RiskManager(self.database, engine_config.risk),
            dispatcher=self.dispatcher,
            settings=engine_config.worker,
        )
        self.scheduler = CycleScheduler(self.database, pipeline, engine_config.worker)

        self._initialized = True
        logger.info("worker.initialized")

    async def run(self):
        """Run the scheduler until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("Worker not initialized. Call initialize() first.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.scheduler.start()
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error("worker.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def run_once(self) -> Dict:
        """Run a single cycle and return the metrics snapshot."""
        if not self._initialized:
            raise RuntimeError("Worker not initialized. Call initialize() first.")
        try:
            await self.scheduler.run_cycle()
            await self.scheduler.pipeline.arbitrator.wait_pending()
            return self.scheduler.metrics.snapshot()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Stop the scheduler and close every client."""
        logger.info("worker.shutting_down")

        if self.scheduler and self.scheduler.running:
            await self.scheduler.stop()

        for client in (self.dispatcher, self.ml_client, self.llm_client, self.market_data):
            if client:
                await client.close()

        if self.database:
            await self.database.close()

        logger.info("worker.shutdown_complete")

    def _signal_handler(self):
        logger.info("worker.shutdown_signal_received")
        self._shutdown_event.set()

    async def get_status(self) -> Dict:
        """Active strategy count plus the current metrics."""
        active = await self.database.count_active_strategies()
        return {
            "status": "running" if self.scheduler and self.scheduler.running else "idle",
            "timestamp": datetime.utcnow().isoformat(),
            "environment": engine_config.system.environment,
            "active_strategies": active,
            "metrics": self.scheduler.metrics.snapshot() if self.scheduler else {},
        }


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("           AI SIGNAL ENGINE - STATUS")
    print("=" * 60)
    print(f"\nStatus: {status.get('status', 'unknown').upper()}")
    print(f"Timestamp: {status.get('timestamp', 'N/A')}")
    print(f"Environment: {status.get('environment', 'N/A')}")
    print(f"Active strategies: {status.get('active_strategies', 0)}")

    metrics = status.get("metrics", {})
    if metrics:
        print("\nMetrics:")
        for key, value in metrics.items():
            print(f"   {key}: {value}")

    print("\n" + "=" * 60)


def print_config_check(report: Dict):
    print("\n" + "=" * 60)
    print("           CONFIGURATION CHECK")
    print("=" * 60)
    if report["valid"]:
        print("\n✓ Configuration is valid")
    else:
        print("\n✗ Configuration errors:")
        for issue in report["issues"]:
            print(f"   - {issue}")
    print(f"\nEnvironment: {engine_config.system.environment}")
    print(f"Cycle interval: {engine_config.worker.cycle_interval_seconds}s")
    print(f"ML service: {engine_config.ml.ml_service_url}")
    print(f"Reasoning model: {engine_config.llm.llm_model}")
    print("\n" + "=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="AI Signal Engine - autonomous decision worker")
    parser.add_argument("--check", action="store_true", help="Check configuration and exit")
    parser.add_argument("--init-db", action="store_true", help="Initialize database and exit")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--status", action="store_true", help="Show status and exit")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL",
    )
    args = parser.parse_args()

    setup_logging(level=args.log_level)

    report = engine_config.validate_configuration()

    if args.check:
        print_config_check(report)
        return

    if args.init_db:
        print("\nInitializing database...")
        db = Database(engine_config.database.database_url)
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    if not report["valid"]:
        print("\n✗ Configuration errors:")
        for issue in report["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    worker = SignalWorker()

    try:
        await worker.initialize()

        if args.status:
            status = await worker.get_status()
            await worker.shutdown()
            print_status(status)
            return

        if args.once:
            snapshot = await worker.run_once()
            print_status({"status": "complete", "timestamp": datetime.utcnow().isoformat(),
                          "environment": engine_config.system.environment,
                          "active_strategies": worker.scheduler.active_strategies,
                          "metrics": snapshot})
            return

        await worker.run()

    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
