"""Worker wiring for periodic balance reconciliation sweeps."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.settings import settings
from vcarda_api.services.notifications import EmailBackend, Notifier
from vcarda_api.services.reconciliation import BalanceReconciler

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class ReconcilerWorker:
    """Runs :class:`BalanceReconciler` on a fixed interval until stopped."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        repair: bool | None = None,
        trigger_label: str | None = None,
        email_backend: EmailBackend | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.reconciler_interval_seconds
        self._batch_size = batch_size or settings.reconciler_batch_size
        self._repair = settings.reconciler_repair_enabled if repair is None else repair
        self._trigger_label = trigger_label or settings.reconciler_trigger_label
        self._email_backend = email_backend
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Reconciler worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
            repair=self._repair,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Reconciler worker stopped")

    async def run_once(self, *, triggered_by: str | None = None, repair: bool | None = None) -> Dict[str, int | str]:
        """Execute one sweep; concurrent calls queue behind the running one."""

        trigger = triggered_by or self._trigger_label
        async with self._lock:
            session = await self._ensure_session()
            async with session as managed_session:
                reconciler = BalanceReconciler(
                    managed_session,
                    batch_size=self._batch_size,
                    repair=self._repair if repair is None else repair,
                    notifier=Notifier(managed_session, self._email_backend),
                )
                summary = await reconciler.run(triggered_by=trigger)
        return summary.as_dict()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Reconciler iteration failed", error_type=type(exc).__name__)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["ReconcilerWorker", "SessionFactory"]
