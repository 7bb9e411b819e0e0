"""Cycle scheduler - runs the decision pipeline over active strategies."""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from signal_engine.core.config import WorkerConfig, worker_config
from signal_engine.core.metrics import CycleMetrics
from signal_engine.core.pipeline import DecisionPipeline
from signal_engine.storage.database import Database

logger = structlog.get_logger(__name__)


class CycleScheduler:
    """
    Runs one cycle immediately on start and then every
    ``cycle_interval_seconds``.

    Cycles never overlap and strategies inside a cycle are processed one at a
    time with a short pause between them. Stopping lets the strategy pass in
    progress finish before the loop exits.
    """

    def __init__(
        self,
        database: Database,
        pipeline: DecisionPipeline,
        settings: WorkerConfig = worker_config,
    ):
        self.database = database
        self.pipeline = pipeline
        self.settings = settings
        self.metrics = CycleMetrics()

        self._running = False
        self._stop_event = asyncio.Event()
        self._main_task: Optional[asyncio.Task] = None
        self.active_strategies = 0
        self.last_cycle_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the cycle loop in the background."""
        if self._running:
            return
        logger.info(
            "scheduler.starting",
            interval_seconds=self.settings.cycle_interval_seconds,
        )
        self._running = True
        self._stop_event.clear()
        self._main_task = asyncio.create_task(self._main_loop())

    async def stop(self):
        """Stop after the in-flight strategy pass and drain ledger writes."""
        logger.info("scheduler.stopping")
        self._running = False
        self._stop_event.set()

        if self._main_task:
            await self._main_task
            self._main_task = None

        await self.pipeline.arbitrator.wait_pending()
        logger.info("scheduler.stopped", **self.metrics.snapshot())

    async def _main_loop(self):
        while self._running:
            await self.run_cycle()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.settings.cycle_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> int:
        """Process every running strategy once. Returns the number attempted."""
        started = datetime.utcnow()
        attempted = 0
        try:
            strategies = await self.database.get_active_strategies()
            self.active_strategies = len(strategies)
            logger.info("scheduler.cycle_started", strategies=len(strategies))

            for index, strategy in enumerate(strategies):
                if index and self._stop_event.is_set():
                    logger.info("scheduler.cycle_interrupted", remaining=len(strategies) - index)
                    break
                if index:
                    await asyncio.sleep(self.settings.strategy_pause_seconds)
                await self.pipeline.process_strategy(strategy, self.metrics)
                attempted += 1
        except Exception as e:
            self.metrics.errors += 1
            logger.error("scheduler.cycle_error", error=str(e), error_type=type(e).__name__)

        self.metrics.cycles += 1
        self.last_cycle_at = datetime.utcnow()
        logger.info(
            "scheduler.cycle_complete",
            cycle=self.metrics.cycles,
            strategies=attempted,
            elapsed_seconds=round((self.last_cycle_at - started).total_seconds(), 2),
        )

        every = self.settings.metrics_log_every_cycles
        if every and self.metrics.cycles % every == 0:
            logger.info("scheduler.metrics", **self.metrics.snapshot())
        return attempted

    def health(self) -> Dict[str, Any]:
        """Status for an external health surface."""
        return {
            "status": "running" if self._running else "stopped",
            "active_strategies": self.active_strategies,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "timestamp": datetime.utcnow().isoformat(),
        }
