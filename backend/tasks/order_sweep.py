"""
Order Sweep - Housekeeping
==========================
Background task that expires PENDING orders nobody paid for.

Features:
- Runs every 15 minutes
- Expires PENDING orders older than 30 minutes
- One bad order never stops the cycle, one bad cycle never stops the loop
- start()/stop() for the application lifespan
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from database import LedgerRepository
from schemas.ledger_models import InvalidTransitionError, OrderStatus, utc_now

logger = structlog.get_logger().bind(component="order_sweep")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweepConfig:
    """Order sweep configuration"""

    # How often to sweep (seconds)
    CHECK_INTERVAL = int(os.getenv("ORDER_SWEEP_INTERVAL", "900"))

    # Age after which a PENDING order is abandoned (minutes)
    STALE_THRESHOLD = int(os.getenv("ORDER_SWEEP_THRESHOLD", "30"))

    ENABLED = os.getenv("ORDER_SWEEP_ENABLED", "true").lower() == "true"


config = SweepConfig()


# =============================================================================
# SWEEPER
# =============================================================================

class OrderSweeper:

    def __init__(
        self,
        repository: LedgerRepository,
        sweep_config: SweepConfig = config,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = sweep_config
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        """One sweep. Returns how many orders were expired."""
        cutoff = self._clock() - timedelta(minutes=self.config.STALE_THRESHOLD)
        stale = await self.repository.find_stale_pending_orders(cutoff)

        expired = 0
        for order in stale:
            try:
                await self.repository.transition_order(order.order_id, OrderStatus.EXPIRED)
                expired += 1
            except InvalidTransitionError:
                # paid or failed between the scan and the write
                logger.info("sweep_order_moved_on", order_id=order.order_id)
            except Exception as e:
                logger.error("sweep_order_failed", order_id=order.order_id, error=str(e))

        if expired:
            logger.info("stale_orders_expired", count=expired, threshold_minutes=self.config.STALE_THRESHOLD)
        return expired

    async def loop(self) -> None:
        logger.info(
            "order_sweep_started",
            interval=self.config.CHECK_INTERVAL,
            threshold=self.config.STALE_THRESHOLD,
        )
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("order_sweep_error", error=str(e))

            await asyncio.sleep(self.config.CHECK_INTERVAL)

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.ENABLED:
            logger.info("order_sweep_disabled")
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.loop())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("order_sweep_stopped")
