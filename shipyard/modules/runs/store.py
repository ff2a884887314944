import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from shipyard.modules.pipeline import PipelineDefinition, parse_pipeline
from shipyard.modules.runner import RunResult, RunStatus, StageResult

logger = logging.getLogger("shipyard.runs")

EVENTS_CHANNEL = "shipyard:events"


def _stages_key(run_id: str) -> str:
    return f"run:{run_id}:stages"


class PipelineNotFoundError(KeyError):
    """Raised when a pipeline name is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Pipeline not found: {name}")

    def __str__(self) -> str:
        return self.args[0]


class PipelineStore:
    def __init__(self, redis_client):
        """
        Initialize pipeline store.

        Args:
            redis_client: Async Redis client
        """
        self.redis = redis_client

    async def register(self, definition_text: str) -> PipelineDefinition:
        """
        Validate and store a pipeline definition.

        Args:
            definition_text: Pipeline YAML

        Returns:
            Parsed definition

        Raises:
            PipelineValidationError: If the definition is invalid (nothing is stored)
        """
        pipeline = parse_pipeline(definition_text)

        await self.redis.set(f"pipeline:def:{pipeline.name}", definition_text)
        await self.redis.sadd("pipelines", pipeline.name)

        logger.info(f"Registered pipeline {pipeline.name} ({len(pipeline.stages)} stages)")
        return pipeline

    async def get_raw(self, name: str) -> str:
        text = await self.redis.get(f"pipeline:def:{name}")
        if text is None:
            raise PipelineNotFoundError(name)
        return text

    async def get(self, name: str) -> PipelineDefinition:
        return parse_pipeline(await self.get_raw(name))

    async def list_names(self) -> List[str]:
        names = await self.redis.smembers("pipelines")
        return sorted(names or [])

    async def delete(self, name: str) -> bool:
        removed = await self.redis.delete(f"pipeline:def:{name}")
        await self.redis.srem("pipelines", name)
        return bool(removed)


class RunStore:
    def __init__(self, redis_client, run_ttl: int = 86400, history_limit: int = 100):
        """
        Initialize run store.

        Args:
            redis_client: Async Redis client
            run_ttl: Seconds a run record is kept
            history_limit: Run ids remembered per pipeline
        """
        self.redis = redis_client
        self.run_ttl = run_ttl
        self.history_limit = history_limit

    async def next_build_number(self, pipeline: str) -> int:
        """Monotonic build number per pipeline (never expires)."""
        return int(await self.redis.incr(f"pipeline:{pipeline}:build_number"))

    async def create_run(
        self,
        pipeline: str,
        params: Optional[Dict[str, str]] = None,
        branch: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a queued run record.

        Logic:
        1. Allocate run id and build number
        2. Store the record with TTL
        3. Prepend to the pipeline's run history
        4. Publish event for monitoring
        """
        run_id = str(uuid.uuid4())
        build_number = await self.next_build_number(pipeline)

        run = {
            "run_id": run_id,
            "pipeline": pipeline,
            "build_number": build_number,
            "branch": branch,
            "params": dict(params or {}),
            "triggered_by": triggered_by or "anonymous",
            "status": RunStatus.QUEUED.value,
            "stages": {},
            "post": {},
            "queued_at": datetime.now(UTC).isoformat(),
            "started_at": None,
            "finished_at": None,
        }

        await self._save(run)

        history_key = f"runs:pipeline:{pipeline}"
        await self.redis.lpush(history_key, run_id)
        await self.redis.ltrim(history_key, 0, self.history_limit - 1)

        await self._publish_event("run.queued", run)
        return run

    async def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Run record with its stages merged in, or None if it expired."""
        data = await self.redis.get(f"run:{run_id}")
        if not data:
            return None
        run = json.loads(data)
        stages = await self.redis.hgetall(_stages_key(run_id))
        run["stages"] = {name: json.loads(value) for name, value in (stages or {}).items()}
        return run

    async def update_run(self, run_id: str, **fields) -> Optional[Dict[str, Any]]:
        """
        Merge fields into a run record, keeping its remaining TTL.

        Returns:
            Updated record or None if the run expired
        """
        run = await self.get_run(run_id)
        if run is None:
            return None

        for key, value in fields.items():
            if hasattr(value, "value"):
                value = value.value
            run[key] = value

        await self._save(run)
        if "status" in fields:
            await self._publish_event(f"run.{run['status']}", run)
        return run

    async def update_stage(self, run_id: str, stage: StageResult) -> None:
        """
        Record one stage's state.

        Each stage is its own hash field, so parallel branches reporting at
        the same time never overwrite each other.
        """
        ttl = await self.redis.ttl(f"run:{run_id}")
        if ttl == -2:
            logger.warning(f"Stage update for unknown run {run_id}")
            return
        await self._store_stages(run_id, {stage.name: stage.to_dict()}, ttl)
        await self._publish_event(
            "stage.updated", {"run_id": run_id, "stage": stage.name, "status": stage.status.value}
        )

    async def save_result(self, run_id: str, result: RunResult) -> Optional[Dict[str, Any]]:
        """Store a finished run."""
        data = result.to_dict()
        ttl = await self.redis.ttl(f"run:{run_id}")
        if ttl == -2:
            return None
        if data["stages"]:
            await self._store_stages(run_id, data["stages"], ttl)
        return await self.update_run(
            run_id,
            status=result.status,
            post=data["post"],
            started_at=data["started_at"],
            finished_at=data["finished_at"],
        )

    async def list_runs(self, pipeline: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent runs first; expired records are skipped."""
        run_ids = await self.redis.lrange(f"runs:pipeline:{pipeline}", 0, limit - 1)
        runs = []
        for run_id in run_ids or []:
            run = await self.get_run(run_id)
            if run:
                runs.append(run)
        return runs

    async def _save(self, run: Dict[str, Any]) -> None:
        key = f"run:{run['run_id']}"
        ttl = await self.redis.ttl(key)
        if not isinstance(ttl, int) or ttl <= 0:
            ttl = self.run_ttl
        # Stages live in their own hash
        record = {k: v for k, v in run.items() if k != "stages"}
        await self.redis.setex(key, ttl, json.dumps(record))

    async def _store_stages(self, run_id: str, stages: Dict[str, Any], ttl: int) -> None:
        stages_key = _stages_key(run_id)
        await self.redis.hset(
            stages_key, mapping={name: json.dumps(stage) for name, stage in stages.items()}
        )
        await self.redis.expire(stages_key, ttl if isinstance(ttl, int) and ttl > 0 else self.run_ttl)

    async def _publish_event(self, event_type: str, data: dict) -> None:
        """Publish run lifecycle event for monitoring."""
        event = {
            "type": event_type,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data,
        }
        await self.redis.publish(EVENTS_CHANNEL, json.dumps(event))
