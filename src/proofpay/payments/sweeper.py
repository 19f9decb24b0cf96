"""Periodic expiry of overdue payment requests."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime

from proofpay.config import SweeperConfig
from proofpay.core.retry import Backoff, retry_async
from proofpay.payments.store import PaymentRequestStore
from proofpay.storage.models import PaymentStatus, utcnow

logger = logging.getLogger("proofpay.payments.sweeper")


class ExpirationSweeper:
    """Marks pending requests past their ``expires_at`` as expired.

    Uses the same guarded transition as the settlement watcher, so a request
    that was paid a moment earlier simply stays paid.
    """

    def __init__(
        self,
        store: PaymentRequestStore,
        settings: SweeperConfig | None = None,
        backoff: Backoff | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or SweeperConfig()
        self.backoff = backoff or Backoff()
        self._stopping = asyncio.Event()

    async def sweep_once(self, now: datetime | None = None) -> list[str]:
        """Run one pass. Returns the ids this pass expired."""
        now = now or utcnow()
        due = await retry_async(
            lambda: self.store.list_due(now),
            backoff=self.backoff,
            retry_on=(sqlite3.OperationalError,),
            attempts=3,
            description="loading overdue payment requests",
        )

        expired: list[str] = []
        for request in due:
            try:
                if await self.store.transition(request.id, PaymentStatus.PENDING, PaymentStatus.EXPIRED):
                    expired.append(request.id)
                else:
                    logger.debug(f"Request {request.id} resolved before it could expire")
            except Exception as exc:
                logger.warning(f"Skipping request {request.id} during sweep: {exc}")

        if expired:
            logger.info(f"Expired {len(expired)} payment request(s)")
        return expired

    async def run(self) -> None:
        """Sweep every ``interval_seconds`` until :meth:`stop` is called."""
        self._stopping.clear()
        logger.info(f"Expiration sweeper started (every {self.settings.interval_seconds:g}s)")
        while not self._stopping.is_set():
            try:
                await self.sweep_once()
            except sqlite3.Error as exc:
                logger.warning(f"Sweep failed: {exc}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Expiration sweeper stopped")

    def stop(self) -> None:
        self._stopping.set()
