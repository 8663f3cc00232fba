"""
Setup Pipeline Executor
Turns a template's ordered setup steps into a running, verified lab. Runs in
the background on a bounded worker pool; every run ends with a persisted
terminal setup status, whatever happens inside it.
"""
import asyncio
import time
from typing import Any, Dict, Optional, Set

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from labforge.config import PipelineSettings, config as app_main_config
from labforge.exceptions import OrchestratorError, PipelineError
from labforge.logger import logger
from labforge.orchestrator.base import BaseOrchestrator
from labforge.schema import (
    ExecResult,
    ExecutionStatus,
    Lab,
    LabStatus,
    SetupExecutionLog,
    SetupStatus,
    SetupStep,
    WorkloadPhase,
    utc_now,
)
from labforge.store import LabStore


class StepAttemptFailed(Exception):
    """One attempt of a step ended with an unexpected exit code."""

    def __init__(self, step: SetupStep, result: ExecResult):
        self.step = step
        self.result = result
        super().__init__(f"Step {step.step_order} exited with {result.exit_code}, expected {step.expected_exit_code}")


class SetupPipeline:
    def __init__(
        self,
        store: LabStore,
        orchestrator: BaseOrchestrator,
        settings: Optional[PipelineSettings] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.settings: PipelineSettings = settings or app_main_config.pipeline

    async def run(self, lab_id: str) -> Optional[SetupStatus]:
        """Runs the setup pipeline for one lab and returns the final setup status.

        Never raises except for cancellation, which is re-raised after the lab
        has been marked FAILED/ERROR. Returns None if the lab no longer exists.
        """
        try:
            return await self._run(lab_id)
        except asyncio.CancelledError:
            logger.warning(f"SetupPipeline: Setup for lab {lab_id} cancelled.")
            await self.mark_failed(lab_id, "Setup cancelled")
            raise
        except PipelineError as e:
            logger.error(f"SetupPipeline: Setup for lab {lab_id} failed: {e.message}")
            return await self.mark_failed(lab_id, e.message)
        except Exception as e:
            logger.exception(f"SetupPipeline: Unexpected error during setup of lab {lab_id}.")
            return await self.mark_failed(lab_id, f"Execution error: {e}")

    async def _run(self, lab_id: str) -> Optional[SetupStatus]:
        lab = await self.store.get_lab(lab_id)
        if lab is None:
            logger.info(f"SetupPipeline: Lab {lab_id} no longer exists; nothing to set up.")
            return None
        if lab.template_id is None:
            raise PipelineError(f"Lab {lab_id} has no template")
        if lab.setup_status in (SetupStatus.READY, SetupStatus.FAILED):
            logger.info(f"SetupPipeline: Lab {lab_id} setup already finished ({lab.setup_status.value}).")
            return lab.setup_status
        if not lab.workload_name:
            raise PipelineError(f"Lab {lab_id} has no workload to set up")

        await self.wait_for_running(lab.workload_name)

        steps = await self.store.list_steps(lab.template_id)
        logger.info(f"SetupPipeline: Running {len(steps)} setup steps for lab {lab_id} (template {lab.template_id}).")

        all_success = True
        for step in steps:
            if await self.execute_step(lab, step):
                continue
            if step.continue_on_failure:
                logger.warning(f"SetupPipeline: Step {step.step_order} failed for lab {lab_id}; continuing (continue_on_failure).")
                continue
            all_success = False
            break

        return await self._finish(lab_id, all_success)

    async def wait_for_running(self, workload_name: str) -> None:
        """Polls the workload phase until it is Running or the readiness timeout elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.readiness_timeout_seconds
        while True:
            try:
                phase = await self.orchestrator.inspect_phase(workload_name)
                if phase == WorkloadPhase.RUNNING:
                    logger.info(f"SetupPipeline: Workload {workload_name} is now running.")
                    return
                logger.debug(f"SetupPipeline: Workload {workload_name} phase is {phase.value}; waiting.")
            except OrchestratorError as e:
                logger.warning(f"SetupPipeline: Error checking workload {workload_name} phase: {e.message}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PipelineError(
                    f"Workload {workload_name} did not reach running state within {self.settings.readiness_timeout_seconds}s"
                )
            await asyncio.sleep(min(self.settings.readiness_poll_interval_seconds, remaining))

    async def execute_step(self, lab: Lab, step: SetupStep) -> bool:
        """Runs one step with retries. The step's single log row is updated in place."""
        log = SetupExecutionLog(
            lab_id=lab.id,
            setup_step_id=step.id,
            step_order=step.step_order,
            step_title=step.title,
            command=step.setup_command,
            status=ExecutionStatus.RUNNING,
            attempt_number=1,
        )
        await self.store.save_log(log)
        started = time.monotonic()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(step.retry_count),
            wait=wait_fixed(self.settings.retry_backoff_seconds),
            retry=retry_if_exception_type(Exception),
            before_sleep=lambda state: logger.warning(
                f"SetupPipeline: Step {step.step_order} failed (attempt {state.attempt_number}), retrying for lab {lab.id}"
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    log.attempt_number = attempt.retry_state.attempt_number
                    logger.info(f"SetupPipeline: Executing step {step.step_order} (attempt {log.attempt_number}) for lab {lab.id}: {step.title}")
                    await self._attempt(lab, step, log, started)
        except StepAttemptFailed:
            log.status = ExecutionStatus.FAILED
            await self.store.save_log(log)
            logger.error(f"SetupPipeline: Step {step.step_order} failed after {log.attempt_number} attempts for lab {lab.id}")
            return False
        except Exception as e:
            log.status = ExecutionStatus.FAILED
            log.error_message = f"Execution error: {e}"
            log.completed_at = utc_now()
            log.execution_time_ms = int((time.monotonic() - started) * 1000)
            await self.store.save_log(log)
            logger.error(f"SetupPipeline: Error executing step {step.step_order} (attempt {log.attempt_number}) for lab {lab.id}: {e}")
            return False

        log.status = ExecutionStatus.SUCCESS
        await self.store.save_log(log)
        logger.info(f"SetupPipeline: Step {step.step_order} completed successfully for lab {lab.id}")
        return True

    async def _attempt(self, lab: Lab, step: SetupStep, log: SetupExecutionLog, started: float) -> None:
        result = await self.orchestrator.exec(
            lab.workload_name,
            self.orchestrator.container_name,
            step.setup_command,
            step.timeout_seconds,
            step.working_directory,
        )
        log.output = result.output
        log.error_message = result.error
        log.exit_code = result.exit_code
        log.completed_at = utc_now()
        log.execution_time_ms = int((time.monotonic() - started) * 1000)
        await self.store.save_log(log)
        # Step success is judged against the expected code, not ExecResult.success
        if result.exit_code != step.expected_exit_code:
            raise StepAttemptFailed(step, result)

    async def _finish(self, lab_id: str, success: bool) -> Optional[SetupStatus]:
        lab = await self.store.get_lab(lab_id)
        if lab is None:
            logger.info(f"SetupPipeline: Lab {lab_id} was deleted during setup; dropping result.")
            return None
        if success:
            lab.advance_setup_status(SetupStatus.READY)
            lab.advance_status(LabStatus.RUNNING)
            lab.setup_completed_at = utc_now()
        else:
            lab.advance_setup_status(SetupStatus.FAILED)
            lab.advance_status(LabStatus.ERROR)
        await self.store.save_lab(lab)
        logger.info(f"SetupPipeline: Template setup completed for lab {lab_id} with status: {lab.setup_status.value}")
        return lab.setup_status

    async def mark_failed(self, lab_id: str, reason: str) -> Optional[SetupStatus]:
        """Persists FAILED/ERROR for a lab and closes any log row left RUNNING."""
        lab = await self.store.get_lab(lab_id)
        if lab is None:
            return None
        for log in await self.store.list_logs(lab_id):
            if log.status in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING):
                log.status = ExecutionStatus.FAILED
                log.error_message = log.error_message or reason
                log.completed_at = log.completed_at or utc_now()
                await self.store.save_log(log)
        lab.advance_setup_status(SetupStatus.FAILED)
        lab.advance_status(LabStatus.ERROR)
        await self.store.save_lab(lab)
        return lab.setup_status


class SetupWorkerPool:
    """
    Bounded pool of background setup runs.
    At most ``max_concurrent`` pipelines execute at once; further submissions
    wait for a slot. Tasks are tracked until they finish.
    """
    def __init__(self, pipeline: SetupPipeline, max_concurrent: Optional[int] = None):
        self.pipeline = pipeline
        self.max_concurrent: int = max_concurrent or pipeline.settings.max_concurrent_setups
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._tasks: Set[asyncio.Task] = set()
        self._running: Set[str] = set()
        self._is_shutting_down = False

    def submit(self, lab_id: str) -> asyncio.Task:
        if self._is_shutting_down:
            raise PipelineError("Setup worker pool is shutting down")
        task = asyncio.create_task(self._run(lab_id), name=f"setup-{lab_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"SetupWorkerPool: Queued setup for lab {lab_id} ({len(self._tasks)} tracked).")
        return task

    async def _run(self, lab_id: str) -> Optional[SetupStatus]:
        started = False
        try:
            async with self._semaphore:
                started = True
                self._running.add(lab_id)
                try:
                    return await self.pipeline.run(lab_id)
                finally:
                    self._running.discard(lab_id)
        except asyncio.CancelledError:
            if not started:
                await self.pipeline.mark_failed(lab_id, "Setup cancelled before it started")
            raise

    async def join(self) -> None:
        """Waits until every tracked setup run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._is_shutting_down = True
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            logger.info(f"SetupWorkerPool: Cancelling {len(pending)} setup run(s).")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queued_setups": len(self._tasks) - len(self._running),
            "running_setups": len(self._running),
            "max_concurrent_setups": self.max_concurrent,
            "is_shutting_down": self._is_shutting_down,
        }
