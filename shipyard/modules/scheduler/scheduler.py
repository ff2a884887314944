"""
Scheduler - turns queued runs into running ones.

Runs are submitted into a per-pipeline FIFO queue. A dispatch pass starts
queued runs while their pipeline still has free concurrent-run slots; each
started run executes as an asyncio task in this process.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from shipyard.modules.pipeline import PipelineDefinition, PipelineValidationError
from shipyard.modules.queue import RunQueue
from shipyard.modules.runner import PipelineRunner, RunStatus
from shipyard.modules.runs import PipelineNotFoundError, PipelineStore, RunStore

logger = logging.getLogger("shipyard.scheduler")


def _now() -> str:
    return datetime.now(UTC).isoformat()


class Scheduler:
    """Submits, dispatches and cancels pipeline runs."""

    def __init__(
        self,
        pipeline_store: PipelineStore,
        run_store: RunStore,
        run_queue: RunQueue,
        runner: PipelineRunner,
        dispatch_interval: float = 1.0,
    ):
        self.pipeline_store = pipeline_store
        self.run_store = run_store
        self.run_queue = run_queue
        self.runner = runner
        self.dispatch_interval = dispatch_interval

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def active_runs(self) -> List[str]:
        return list(self._tasks)

    async def submit(
        self,
        pipeline_name: str,
        params: Optional[Dict[str, str]] = None,
        branch: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Queue a new run.

        Raises:
            PipelineNotFoundError: If the pipeline is not registered
        """
        pipeline = await self.pipeline_store.get(pipeline_name)
        run = await self.run_store.create_run(
            pipeline.name, params=params, branch=branch, triggered_by=triggered_by
        )
        depth = await self.run_queue.enqueue(pipeline.name, run["run_id"])
        logger.info(
            f"Queued run {run['run_id']} of {pipeline.name} #{run['build_number']} "
            f"(queue depth {depth})"
        )
        return run

    async def dispatch_once(self) -> List[str]:
        """
        Start every queued run that fits within its pipeline's limit.

        Returns:
            Ids of the runs started by this pass
        """
        started = []
        for name in await self.run_queue.queued_pipelines():
            try:
                pipeline = await self.pipeline_store.get(name)
            except PipelineNotFoundError:
                cleared = await self.run_queue.clear(name)
                logger.warning(f"Dropped {cleared} queued run(s) of unregistered pipeline {name}")
                continue
            except PipelineValidationError as e:
                logger.error(f"Stored definition of {name} is invalid: {e}")
                continue

            while await self.run_queue.running_count(name) < pipeline.max_concurrent_runs:
                run_id = await self.run_queue.pop(name)
                if run_id is None:
                    break
                if not await self.run_queue.acquire_slot(name, run_id, pipeline.max_concurrent_runs):
                    await self.run_queue.requeue(name, run_id)
                    break

                run = await self.run_store.get_run(run_id)
                if run is None or run.get("status") != RunStatus.QUEUED.value:
                    logger.warning(f"Skipping run {run_id}: record missing or no longer queued")
                    await self.run_queue.release_slot(name, run_id)
                    continue

                self._start(pipeline, run)
                started.append(run_id)
        return started

    def _start(self, pipeline: PipelineDefinition, run: Dict[str, Any]) -> None:
        run_id = run["run_id"]
        cancel_event = asyncio.Event()
        self._cancel_events[run_id] = cancel_event
        self._tasks[run_id] = asyncio.create_task(
            self._execute(pipeline, run, cancel_event), name=f"run:{run_id}"
        )
        logger.info(f"Dispatched run {run_id} of {pipeline.name} #{run['build_number']}")

    async def _execute(
        self, pipeline: PipelineDefinition, run: Dict[str, Any], cancel_event: asyncio.Event
    ) -> None:
        run_id = run["run_id"]
        try:
            await self.run_store.update_run(run_id, status=RunStatus.RUNNING, started_at=_now())

            async def on_stage_update(stage):
                await self.run_store.update_stage(run_id, stage)

            result = await self.runner.run(
                pipeline,
                run_id=run_id,
                build_number=run["build_number"],
                params=run.get("params") or {},
                branch=run.get("branch"),
                cancel_event=cancel_event,
                on_stage_update=on_stage_update,
            )
            await self.run_store.save_result(run_id, result)
        except Exception as e:
            logger.exception(f"Run {run_id} crashed: {e}")
            await self.run_store.update_run(
                run_id, status=RunStatus.FAILED, error=str(e), finished_at=_now()
            )
        finally:
            await self.run_queue.release_slot(pipeline.name, run_id)
            self._tasks.pop(run_id, None)
            self._cancel_events.pop(run_id, None)

    async def cancel(self, run_id: str) -> bool:
        """
        Cancel a running or queued run.

        Returns:
            True if the run was found in a cancellable state
        """
        if run_id in self._cancel_events:
            logger.info(f"Cancelling running run {run_id}")
            self._cancel_events[run_id].set()
            return True

        run = await self.run_store.get_run(run_id)
        if run is None or run.get("status") != RunStatus.QUEUED.value:
            return False

        if await self.run_queue.remove(run["pipeline"], run_id):
            await self.run_store.update_run(run_id, status=RunStatus.CANCELLED, finished_at=_now())
            logger.info(f"Cancelled queued run {run_id}")
            return True
        return False

    async def wait(self, run_id: str) -> None:
        """Wait for a locally running run to finish."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def recover(self) -> int:
        """
        Release slots held by runs this process does not own.

        Meant for startup, when slots left behind by a crashed scheduler
        would otherwise block their pipelines forever.
        """
        released = 0
        for name in await self.pipeline_store.list_names():
            for run_id in await self.run_queue.running_runs(name):
                if run_id in self._tasks:
                    continue
                await self.run_queue.release_slot(name, run_id)
                await self.run_store.update_run(
                    run_id,
                    status=RunStatus.FAILED,
                    error="scheduler restarted while the run was in progress",
                    finished_at=_now(),
                )
                released += 1
        if released:
            logger.warning(f"Released {released} stale run slot(s)")
        return released

    async def _dispatch_loop(self) -> None:
        while True:
            try:
                await self.dispatch_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Dispatch pass failed: {e}")
            await asyncio.sleep(self.dispatch_interval)

    async def start(self) -> None:
        if self._loop_task is None:
            await self.recover()
            self._loop_task = asyncio.create_task(self._dispatch_loop(), name="scheduler-dispatch")
            logger.info(f"Scheduler started (dispatch every {self.dispatch_interval}s)")

    async def stop(self) -> None:
        """Stop dispatching and cancel runs in flight."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        for event in self._cancel_events.values():
            event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        logger.info("Scheduler stopped")
