"""Periodic reconciliation: a short backfill over every connection.

Webhooks are best effort on the provider side; the reconciliation job pulls
the last few days for every connection of every configured provider so a
missed notification is picked up within one interval.  Writes are
idempotent, so re-pulling already stored data is a no-op.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable

from src.wearables.base import utc_now
from src.wearables.errors import NotConnected, ReauthRequired, WearableSyncError
from src.wearables.sync.backfill import DataTypeSyncResult

if TYPE_CHECKING:
    from src.config import Settings
    from src.wearables.engine import ProviderRuntime, SyncEngine

logger = logging.getLogger("wearsync.wearables.sync.scheduler")


@dataclass
class ReconciliationResult:
    """Result of reconciling one connection.

    Attributes:
        provider:   Provider slug.
        user_id:    Local user id.
        status:     'success', 'partial', 'error' or 'reauth_required'.
        data_types: Per-data-type outcomes.
        error:      Error message when the whole run failed.
        synced_at:  UTC timestamp of completion.
    """

    provider: str
    user_id: str
    status: str = "success"
    data_types: list[DataTypeSyncResult] = field(default_factory=list)
    error: str | None = None
    synced_at: datetime = field(default_factory=utc_now)


def _status(results: list[DataTypeSyncResult]) -> str:
    failures = sum(1 for r in results if not r.success)
    if failures == 0:
        return "success"
    if failures < len(results):
        return "partial"
    return "error"


class ReconciliationScheduler:
    """Run ``sync_recent`` for every connection on a fixed interval.

    Usage::

        scheduler = ReconciliationScheduler(engine, settings)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: SyncEngine,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._interval = settings.reconciliation_interval_seconds
        self._lookback_days = settings.reconciliation_lookback_days
        self._concurrency = max(1, settings.reconciliation_concurrency)
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.last_results: list[ReconciliationResult] = []

    async def run_once(self) -> list[ReconciliationResult]:
        """Reconcile every connection of every configured provider once."""
        jobs: list[tuple[ProviderRuntime, str]] = []
        for runtime in self._engine.configured_runtimes():
            for connection in await self._engine.store.list_connections(runtime.name):
                jobs.append((runtime, connection.user_id))
        if not jobs:
            logger.debug("Reconciliation: no connections")
            self.last_results = []
            return []

        logger.info("Reconciliation: %d connection(s)", len(jobs))
        semaphore = asyncio.Semaphore(self._concurrency)
        outcomes = await asyncio.gather(
            *(self._reconcile(runtime, user_id, semaphore) for runtime, user_id in jobs),
            return_exceptions=True,
        )

        results: list[ReconciliationResult] = []
        for (runtime, user_id), outcome in zip(jobs, outcomes):
            if isinstance(outcome, ReconciliationResult):
                results.append(outcome)
                continue
            logger.error(
                "Reconciliation of %s/%s crashed: %r", runtime.name, user_id, outcome
            )
            results.append(
                ReconciliationResult(
                    provider=runtime.name, user_id=user_id, status="error", error=str(outcome)
                )
            )

        logger.info(
            "Reconciliation complete: %d connection(s), %d not fully successful",
            len(results),
            sum(1 for r in results if r.status != "success"),
        )
        self.last_results = results
        return results

    async def _reconcile(
        self, runtime: ProviderRuntime, user_id: str, semaphore: asyncio.Semaphore
    ) -> ReconciliationResult:
        async with semaphore:
            result = ReconciliationResult(provider=runtime.name, user_id=user_id)
            try:
                result.data_types = await runtime.backfill.sync_recent(
                    user_id, self._lookback_days
                )
            except (ReauthRequired, NotConnected) as exc:
                logger.warning(
                    "Reconciliation of %s/%s needs reconnect: %s", runtime.name, user_id, exc
                )
                result.status = "reauth_required"
                result.error = str(exc)
                return result
            except WearableSyncError as exc:
                logger.warning("Reconciliation of %s/%s failed: %s", runtime.name, user_id, exc)
                result.status = "error"
                result.error = str(exc)
                return result
            result.status = _status(result.data_types)
            return result

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="reconciliation")
            logger.info("Reconciliation scheduled every %ds", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation run failed")
