"""
Pipeline Runner - executes one run over the stage graph.

Stages start as soon as all of their dependencies have finished, so
independent stages (the branches of a parallel group) run concurrently,
bounded by max_parallel_stages.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from shipyard.modules.executor import StepResult, ToolRunner, resolve_environment
from shipyard.modules.pipeline import PipelineDefinition, StageDefinition, StageGraph
from shipyard.modules.rollout import RolloutCoordinator

logger = logging.getLogger("shipyard.runner")


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_BUILT = "not_built"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


# Dependency outcomes that let downstream stages start
SATISFIED_STATUSES = {StageStatus.SUCCESS, StageStatus.UNSTABLE, StageStatus.SKIPPED}

TERMINAL_STAGE_STATUSES = SATISFIED_STATUSES | {
    StageStatus.FAILED,
    StageStatus.NOT_BUILT,
    StageStatus.CANCELLED,
}

TERMINAL_RUN_STATUSES = {
    RunStatus.SUCCESS,
    RunStatus.UNSTABLE,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.TIMED_OUT,
}


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class StageResult:
    name: str
    status: StageStatus = StageStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    rollout: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "rollout": self.rollout,
            "reason": self.reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RunResult:
    run_id: str
    pipeline: str
    build_number: int
    branch: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    stages: Dict[str, StageResult] = field(default_factory=dict)
    post: Dict[str, List[StepResult]] = field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "build_number": self.build_number,
            "branch": self.branch,
            "status": self.status.value,
            "stages": {name: s.to_dict() for name, s in self.stages.items()},
            "post": {cond: [s.to_dict() for s in steps] for cond, steps in self.post.items()},
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


StageCallback = Callable[[StageResult], Awaitable[None]]


class PipelineRunner:
    """Runs pipelines; one instance can serve many concurrent runs."""

    def __init__(
        self,
        tool_runner: ToolRunner,
        coordinator: Optional[RolloutCoordinator] = None,
        max_parallel_stages: int = 4,
    ):
        """
        Args:
            tool_runner: Runner for stage steps and post actions
            coordinator: Rollout coordinator for deploy stages
            max_parallel_stages: Stages executing at once within one run
        """
        self.tool_runner = tool_runner
        self.coordinator = coordinator
        self.max_parallel_stages = max_parallel_stages

    async def run(
        self,
        pipeline: PipelineDefinition,
        run_id: Optional[str] = None,
        build_number: int = 1,
        params: Optional[Mapping[str, str]] = None,
        branch: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_stage_update: Optional[StageCallback] = None,
    ) -> RunResult:
        """
        Execute a pipeline run to completion.

        Returns:
            RunResult with the final status of every stage and post action
        """
        run_id = run_id or str(uuid.uuid4())
        base_env = dict(params or {})
        base_env.update(
            {
                "BUILD_NUMBER": str(build_number),
                "BUILD_ID": run_id,
                "RUN_ID": run_id,
                "BRANCH_NAME": branch or "",
                "PIPELINE_NAME": pipeline.name,
            }
        )
        env = resolve_environment(pipeline.environment, base_env)
        graph = StageGraph(pipeline.stages, pipeline.groups)

        result = RunResult(
            run_id=run_id,
            pipeline=pipeline.name,
            build_number=build_number,
            branch=branch,
            stages={name: StageResult(name=name) for name in graph.names},
            started_at=_now(),
        )
        logger.info(f"Run {run_id} of {pipeline.name} #{build_number} started")

        async def notify(stage_result: StageResult) -> None:
            if on_stage_update is None:
                return
            try:
                await on_stage_update(stage_result)
            except Exception as e:
                logger.error(f"Stage update callback failed for {stage_result.name}: {e}")

        semaphore = asyncio.Semaphore(self.max_parallel_stages)
        running: Dict[asyncio.Task, str] = {}
        started = set()
        cancel_reasons: Dict[str, str] = {}
        halted = False
        outcome: Optional[RunStatus] = None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + pipeline.timeout
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None

        try:
            while True:
                # Resolve every stage that can be decided now; repeat until stable
                changed = True
                while changed:
                    changed = False
                    for name in graph.names:
                        stage_result = result.stages[name]
                        if name in started or stage_result.status != StageStatus.PENDING:
                            continue
                        deps = [result.stages[d].status for d in graph.dependencies(name)]
                        if any(s not in TERMINAL_STAGE_STATUSES for s in deps):
                            continue

                        stage = graph.stage(name)
                        if any(s not in SATISFIED_STATUSES for s in deps):
                            self._finish(stage_result, StageStatus.NOT_BUILT,
                                         "upstream stage did not succeed")
                        elif halted:
                            self._finish(stage_result, StageStatus.NOT_BUILT,
                                         "pipeline halted after a failure")
                        elif not stage.applies_to(branch):
                            self._finish(stage_result, StageStatus.SKIPPED,
                                         f"when branch is {stage.when_branch!r}")
                        else:
                            task = asyncio.create_task(
                                self._run_stage(stage, env, semaphore, stage_result, notify),
                                name=f"{run_id}:{name}",
                            )
                            running[task] = name
                            started.add(name)
                            continue
                        changed = True
                        await notify(stage_result)

                if not running:
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    outcome = RunStatus.TIMED_OUT
                    break

                waiting = set(running)
                if cancel_waiter is not None:
                    waiting.add(cancel_waiter)
                done, _ = await asyncio.wait(
                    waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )

                if not done:
                    outcome = RunStatus.TIMED_OUT
                    break
                if cancel_waiter is not None and cancel_waiter in done:
                    outcome = RunStatus.CANCELLED
                    break

                for task in done:
                    name = running.pop(task)
                    stage_result = result.stages[name]
                    if task.cancelled():
                        self._finish(stage_result, StageStatus.CANCELLED,
                                     cancel_reasons.get(name, "cancelled"))
                    elif task.exception() is not None:
                        error = task.exception()
                        logger.error(f"Stage {name} crashed: {error!r}")
                        self._finish(stage_result, StageStatus.FAILED, f"internal error: {error}")
                    await notify(stage_result)

                    if stage_result.status == StageStatus.FAILED:
                        if pipeline.fail_fast:
                            halted = True
                        for sibling in graph.siblings(name):
                            for other, other_name in running.items():
                                if other_name == sibling and not other.done():
                                    cancel_reasons[sibling] = f"cancelled after {name} failed"
                                    other.cancel()
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if running:
                reason = {
                    RunStatus.CANCELLED: "run cancelled",
                    RunStatus.TIMED_OUT: f"run timed out after {pipeline.timeout}s",
                }.get(outcome, "run interrupted")
                await self._cancel_all(running, result, reason, notify)

        for stage_result in result.stages.values():
            if stage_result.status == StageStatus.PENDING:
                self._finish(stage_result, StageStatus.NOT_BUILT,
                             "run ended before the stage could start")
                await notify(stage_result)

        result.status = self._final_status(result, outcome)
        logger.info(f"Run {run_id} of {pipeline.name} #{build_number} finished: {result.status.value}")

        post_env = dict(env)
        post_env["BUILD_STATUS"] = result.status.value
        await self._run_post(pipeline, result, post_env)

        result.finished_at = _now()
        return result

    @staticmethod
    def _finish(stage_result: StageResult, status: StageStatus, reason: Optional[str] = None) -> None:
        stage_result.status = status
        if reason:
            stage_result.reason = reason
        stage_result.finished_at = _now()

    async def _cancel_all(
        self,
        running: Dict[asyncio.Task, str],
        result: RunResult,
        reason: str,
        notify: StageCallback,
    ) -> None:
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for task, name in running.items():
            stage_result = result.stages[name]
            if stage_result.status not in TERMINAL_STAGE_STATUSES or task.cancelled():
                self._finish(stage_result, StageStatus.CANCELLED, reason)
                await notify(stage_result)
        running.clear()

    async def _run_stage(
        self,
        stage: StageDefinition,
        env: Mapping[str, str],
        semaphore: asyncio.Semaphore,
        stage_result: StageResult,
        notify: StageCallback,
    ) -> None:
        async with semaphore:
            stage_result.status = StageStatus.RUNNING
            stage_result.started_at = _now()
            await notify(stage_result)
            logger.info(f"Stage {stage.name} started")

            stage_env = resolve_environment(stage.environment, env)
            try:
                if stage.timeout:
                    await asyncio.wait_for(
                        self._execute_stage(stage, stage_env, stage_result), stage.timeout
                    )
                else:
                    await self._execute_stage(stage, stage_env, stage_result)
            except asyncio.TimeoutError:
                self._finish(stage_result, StageStatus.FAILED,
                             f"stage timed out after {stage.timeout}s")

            logger.info(f"Stage {stage.name} finished: {stage_result.status.value}")

    async def _execute_stage(
        self, stage: StageDefinition, env: Mapping[str, str], stage_result: StageResult
    ) -> None:
        unstable = False
        for step in stage.steps:
            step_result = await self.tool_runner.run(step, env)
            stage_result.steps.append(step_result)
            if step_result.success:
                continue
            if step.continue_on_error:
                step_result.tolerated = True
                unstable = True
                logger.warning(f"Stage {stage.name}: tolerated failure of '{step.display}'")
                continue
            self._finish(stage_result, StageStatus.FAILED,
                         f"step '{step.display}' {step_result.status.value} (rc={step_result.return_code})")
            return

        if stage.deploy is not None:
            if self.coordinator is None:
                self._finish(stage_result, StageStatus.FAILED, "no rollout coordinator configured")
                return
            rollout = await self.coordinator.deploy(stage.deploy, env)
            stage_result.rollout = rollout.to_dict()
            if not rollout.succeeded:
                self._finish(stage_result, StageStatus.FAILED,
                             f"rollout {rollout.state.value}: {rollout.error}")
                return

        self._finish(stage_result, StageStatus.UNSTABLE if unstable else StageStatus.SUCCESS)

    @staticmethod
    def _final_status(result: RunResult, outcome: Optional[RunStatus]) -> RunStatus:
        if outcome in (RunStatus.CANCELLED, RunStatus.TIMED_OUT):
            return outcome
        statuses = {s.status for s in result.stages.values()}
        if StageStatus.FAILED in statuses or StageStatus.CANCELLED in statuses:
            return RunStatus.FAILED
        if StageStatus.UNSTABLE in statuses:
            return RunStatus.UNSTABLE
        return RunStatus.SUCCESS

    async def _run_post(
        self, pipeline: PipelineDefinition, result: RunResult, env: Mapping[str, str]
    ) -> None:
        """Run post actions; their failures never change the run status."""
        applicable = {
            "always": True,
            "aborted": result.status in (RunStatus.CANCELLED, RunStatus.TIMED_OUT),
            "failure": result.status == RunStatus.FAILED,
            "success": result.status == RunStatus.SUCCESS,
            "unstable": result.status == RunStatus.UNSTABLE,
            "cleanup": True,
        }
        for condition in ("always", "aborted", "failure", "success", "unstable", "cleanup"):
            steps = pipeline.post.get(condition)
            if not steps or not applicable[condition]:
                continue
            results = result.post.setdefault(condition, [])
            for step in steps:
                step_result = await self.tool_runner.run(step, env)
                results.append(step_result)
                if not step_result.success:
                    if step.continue_on_error:
                        step_result.tolerated = True
                        continue
                    logger.warning(
                        f"Post action '{condition}' step '{step.display}' failed; "
                        f"remaining '{condition}' steps skipped"
                    )
                    break
