"""Background task that expires overdue holds on a jittered schedule."""

import asyncio
import random
from collections.abc import Awaitable, Callable

from shopcore.common.config import settings
from shopcore.common.logging import log_context, logger
from shopcore.common.metrics import sweeper_runs_total
from shopcore.services.reservations.service import ReservationManager


class ReservationSweeper:
    """Finds active reservations past expiry and hands them to `expire_order`.

    `expire_order` is the order state machine's `expire_holds`, so expiring a
    hold and failing the order's payment happen in one unit of work.
    """

    def __init__(
        self,
        manager: ReservationManager,
        expire_order: Callable[[str], Awaitable[int]],
        interval_seconds: float | None = None,
        jitter_seconds: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.manager = manager
        self.expire_order = expire_order
        self.interval_seconds = settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
        self.jitter_seconds = settings.sweep_jitter_seconds if jitter_seconds is None else jitter_seconds
        self.batch_size = settings.sweep_batch_size if batch_size is None else batch_size

    async def sweep_once(self) -> int:
        """Run one sweep and return the number of reservations expired."""

        overdue = await self.manager.find_expired(limit=self.batch_size)
        order_ids = list(dict.fromkeys(reservation.order_id for reservation in overdue))
        expired = 0
        failures = 0
        for order_id in order_ids:
            with log_context(order_id=order_id):
                try:
                    expired += await self.expire_order(order_id)
                except Exception as exc:
                    # Left active; the next sweep picks it up again.
                    failures += 1
                    logger.exception("sweep failed order_id=%s error=%s", order_id, exc)
        sweeper_runs_total.labels(outcome="partial" if failures else "ok").inc()
        if expired:
            logger.info("sweep expired reservations=%s orders=%s", expired, len(order_ids))
        return expired

    def next_delay(self) -> float:
        return self.interval_seconds + random.uniform(0, self.jitter_seconds)

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.next_delay())
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                sweeper_runs_total.labels(outcome="error").inc()
                logger.error("sweeper loop error=%s", exc)
