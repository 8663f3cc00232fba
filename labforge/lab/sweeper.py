import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from labforge.config import SweeperSettings, config as app_main_config
from labforge.logger import logger
from labforge.orchestrator.base import BaseOrchestrator
from labforge.schema import LabStatus, utc_now
from labforge.store import LabStore


class ExpirySweeper:
    """
    Periodically reclaims labs whose expiry has passed.
    Expired labs keep their record with status EXPIRED; only the backing
    workload is released.
    """
    def __init__(
        self,
        store: LabStore,
        orchestrator: BaseOrchestrator,
        settings: Optional[SweeperSettings] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.settings: SweeperSettings = settings or app_main_config.sweeper
        self._sweep_task: Optional[asyncio.Task] = None
        self._is_shutting_down = False
        self.last_sweep_at: Optional[datetime] = None
        self.total_expired = 0

    async def sweep_once(self, now: Optional[datetime] = None) -> List[str]:
        """Expires every RUNNING lab past its expiry. Returns the ids that were expired."""
        now = now or utc_now()
        expired_labs = await self.store.find_expired_labs(now)
        logger.debug(f"ExpirySweeper: Found {len(expired_labs)} expired lab(s).")

        expired_ids: List[str] = []
        for lab in expired_labs:
            try:
                if lab.workload_name:
                    await self.orchestrator.terminate(lab.workload_name)
            except Exception as e:
                logger.error(f"ExpirySweeper: Failed to terminate workload {lab.workload_name} of lab {lab.id}: {e}")

            try:
                current = await self.store.get_lab(lab.id)
                if current is None:
                    continue
                if current.advance_status(LabStatus.EXPIRED):
                    await self.store.save_lab(current)
                expired_ids.append(lab.id)
                logger.info(f"ExpirySweeper: Lab {lab.id} expired.")
            except Exception as e:
                logger.error(f"ExpirySweeper: Failed to mark lab {lab.id} expired: {e}")

        self.last_sweep_at = now
        self.total_expired += len(expired_ids)
        return expired_ids

    def start(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            logger.info("ExpirySweeper: Sweep task already running.")
            return
        self._is_shutting_down = False

        async def sweep_loop():
            logger.info(f"ExpirySweeper: Sweep loop started (interval {self.settings.interval_seconds}s).")
            if self.settings.run_on_start:
                await self._safe_sweep()
            while not self._is_shutting_down:
                try:
                    await asyncio.sleep(self.settings.interval_seconds)
                    if not self._is_shutting_down:
                        await self._safe_sweep()
                except asyncio.CancelledError:
                    logger.info("ExpirySweeper: Sweep loop cancelled.")
                    break
            logger.info("ExpirySweeper: Sweep loop stopped.")

        self._sweep_task = asyncio.create_task(sweep_loop())

    async def _safe_sweep(self) -> None:
        try:
            await self.sweep_once()
        except Exception:
            logger.exception("ExpirySweeper: Error during scheduled sweep.")

    async def stop(self) -> None:
        self._is_shutting_down = True
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await asyncio.wait_for(self._sweep_task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                logger.warning("ExpirySweeper: Sweep task did not shut down gracefully or timed out.")
        self._sweep_task = None

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "sweep_interval_seconds": self.settings.interval_seconds,
            "sweeper_running": self.is_running,
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            "total_expired": self.total_expired,
        }
