import asyncio
import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from fixtures.rollout_scenarios import ToolResponse
from shipyard.modules.executor import ToolRunner
from shipyard.modules.queue import RunQueue
from shipyard.modules.runner import PipelineRunner, RunResult, RunStatus, StageResult, StageStatus
from shipyard.modules.runs import PipelineNotFoundError, PipelineStore, RunStore
from shipyard.modules.scheduler import Scheduler

PIPELINE = """
name: task-manager
max_concurrent_runs: {limit}
stages:
  - name: build
    steps: [make build]
"""


class BlockingRunner:
    """Runner stand-in whose runs finish when ``release`` is set."""

    def __init__(self, fail: bool = False):
        self.release = asyncio.Event()
        self.fail = fail
        self.started = []

    async def run(self, pipeline, run_id=None, build_number=1, params=None, branch=None,
                  cancel_event=None, on_stage_update=None):
        self.started.append(run_id)
        await on_stage_update(StageResult(name="build", status=StageStatus.RUNNING))
        await self.release.wait()
        if self.fail:
            raise RuntimeError("runner exploded")
        return RunResult(
            run_id=run_id,
            pipeline=pipeline.name,
            build_number=build_number,
            branch=branch,
            status=RunStatus.SUCCESS,
            stages={"build": StageResult(name="build", status=StageStatus.SUCCESS)},
            started_at="2026-01-01T00:00:00+00:00",
            finished_at="2026-01-01T00:00:05+00:00",
        )


def make_scheduler(redis, runner):
    return Scheduler(
        PipelineStore(redis),
        RunStore(redis),
        RunQueue(redis),
        runner,
        dispatch_interval=0.01,
    )


@pytest_asyncio.fixture
async def registered(redis_store):
    await PipelineStore(redis_store).register(PIPELINE.format(limit=1))
    return redis_store


@pytest.mark.asyncio
async def test_submit_unknown_pipeline(redis_store):
    scheduler = make_scheduler(redis_store, BlockingRunner())

    with pytest.raises(PipelineNotFoundError):
        await scheduler.submit("ghost")


@pytest.mark.asyncio
async def test_submit_queues_run(registered):
    scheduler = make_scheduler(registered, BlockingRunner())

    run = await scheduler.submit("task-manager", params={"A": "1"}, branch="main", triggered_by="ci")

    assert run["status"] == "queued"
    assert await scheduler.run_queue.depth("task-manager") == 1
    assert scheduler.active_runs == []


@pytest.mark.asyncio
async def test_dispatch_respects_concurrency_limit(registered):
    runner = BlockingRunner()
    scheduler = make_scheduler(registered, runner)
    first = await scheduler.submit("task-manager")
    second = await scheduler.submit("task-manager")

    started = await scheduler.dispatch_once()
    await asyncio.sleep(0.01)

    assert started == [first["run_id"]]
    assert await scheduler.dispatch_once() == []
    assert await scheduler.run_queue.depth("task-manager") == 1
    assert (await scheduler.run_store.get_run(first["run_id"]))["status"] == "running"
    assert (await scheduler.run_store.get_run(second["run_id"]))["status"] == "queued"

    runner.release.set()
    await scheduler.wait(first["run_id"])

    assert await scheduler.run_queue.running_count("task-manager") == 0
    assert await scheduler.dispatch_once() == [second["run_id"]]
    await scheduler.wait(second["run_id"])
    assert runner.started == [first["run_id"], second["run_id"]]


@pytest.mark.asyncio
async def test_higher_limit_runs_concurrently(redis_store):
    await PipelineStore(redis_store).register(PIPELINE.format(limit=2))
    runner = BlockingRunner()
    scheduler = make_scheduler(redis_store, runner)
    for _ in range(3):
        await scheduler.submit("task-manager")

    started = await scheduler.dispatch_once()

    assert len(started) == 2
    assert await scheduler.run_queue.depth("task-manager") == 1
    runner.release.set()
    for run_id in started:
        await scheduler.wait(run_id)


@pytest.mark.asyncio
async def test_finished_run_is_recorded(registered):
    runner = BlockingRunner()
    runner.release.set()
    scheduler = make_scheduler(registered, runner)
    run = await scheduler.submit("task-manager")

    await scheduler.dispatch_once()
    await scheduler.wait(run["run_id"])

    record = await scheduler.run_store.get_run(run["run_id"])
    assert record["status"] == "success"
    assert record["stages"]["build"]["status"] == "success"
    assert record["finished_at"] == "2026-01-01T00:00:05+00:00"
    assert scheduler.active_runs == []


@pytest.mark.asyncio
async def test_runner_crash_marks_run_failed(registered):
    runner = BlockingRunner(fail=True)
    runner.release.set()
    scheduler = make_scheduler(registered, runner)
    run = await scheduler.submit("task-manager")

    await scheduler.dispatch_once()
    await scheduler.wait(run["run_id"])

    record = await scheduler.run_store.get_run(run["run_id"])
    assert record["status"] == "failed"
    assert record["error"] == "runner exploded"
    assert await scheduler.run_queue.running_count("task-manager") == 0


@pytest.mark.asyncio
async def test_cancel_queued_run(registered):
    scheduler = make_scheduler(registered, BlockingRunner())
    run = await scheduler.submit("task-manager")

    assert await scheduler.cancel(run["run_id"]) is True

    record = await scheduler.run_store.get_run(run["run_id"])
    assert record["status"] == "cancelled"
    assert await scheduler.run_queue.depth("task-manager") == 0
    assert await scheduler.dispatch_once() == []


@pytest.mark.asyncio
async def test_cancel_finished_or_unknown_run(registered):
    runner = BlockingRunner()
    runner.release.set()
    scheduler = make_scheduler(registered, runner)
    run = await scheduler.submit("task-manager")
    await scheduler.dispatch_once()
    await scheduler.wait(run["run_id"])

    assert await scheduler.cancel(run["run_id"]) is False
    assert await scheduler.cancel("no-such-run") is False


@pytest.mark.asyncio
@pytest.mark.tool_mock
async def test_cancel_running_run(registered, tool_mocker_ok):
    tool_mocker_ok.register("make build", ToolResponse(delay=5))
    runner = PipelineRunner(ToolRunner(inherit_env=False))
    scheduler = make_scheduler(registered, runner)
    run = await scheduler.submit("task-manager")
    await scheduler.dispatch_once()
    await asyncio.sleep(0.05)

    assert await scheduler.cancel(run["run_id"]) is True
    await asyncio.wait_for(scheduler.wait(run["run_id"]), timeout=3)

    record = await scheduler.run_store.get_run(run["run_id"])
    assert record["status"] == "cancelled"
    assert record["stages"]["build"]["status"] == "cancelled"
    assert tool_mocker_ok.get_calls_matching("make build")[0].killed


@pytest.mark.asyncio
async def test_unregistered_pipeline_queue_is_dropped(registered):
    scheduler = make_scheduler(registered, BlockingRunner())
    await scheduler.submit("task-manager")
    await scheduler.pipeline_store.delete("task-manager")

    assert await scheduler.dispatch_once() == []
    assert await scheduler.run_queue.depth("task-manager") == 0
    assert await scheduler.run_queue.queued_pipelines() == []


@pytest.mark.asyncio
async def test_recover_releases_stale_slots(registered):
    scheduler = make_scheduler(registered, BlockingRunner())
    run = await scheduler.run_store.create_run("task-manager")
    await scheduler.run_queue.acquire_slot("task-manager", run["run_id"], limit=1)

    released = await scheduler.recover()

    assert released == 1
    assert await scheduler.run_queue.running_count("task-manager") == 0
    record = await scheduler.run_store.get_run(run["run_id"])
    assert record["status"] == "failed"
    assert "restarted" in record["error"]


@pytest.mark.asyncio
async def test_dispatch_loop(registered):
    runner = BlockingRunner()
    runner.release.set()
    scheduler = make_scheduler(registered, runner)
    run = await scheduler.submit("task-manager")

    await scheduler.start()
    try:
        for _ in range(200):
            record = await scheduler.run_store.get_run(run["run_id"])
            if record["status"] == "success":
                break
            await asyncio.sleep(0.01)
    finally:
        await scheduler.stop()

    assert record["status"] == "success"
    assert scheduler._loop_task is None


@pytest.mark.asyncio
@pytest.mark.tool_mock
async def test_stop_cancels_in_flight_runs(registered, tool_mocker_ok):
    tool_mocker_ok.register("make build", ToolResponse(delay=5))
    scheduler = make_scheduler(registered, PipelineRunner(ToolRunner(inherit_env=False)))
    run = await scheduler.submit("task-manager")

    await scheduler.start()
    for _ in range(100):
        if tool_mocker_ok.was_called_with("make build"):
            break
        await asyncio.sleep(0.01)
    await asyncio.wait_for(scheduler.stop(), timeout=3)

    record = await scheduler.run_store.get_run(run["run_id"])
    assert record["status"] == "cancelled"
    assert scheduler.active_runs == []
