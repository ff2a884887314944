#!/usr/bin/env python3
"""
Shipyard - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs the API server and the run scheduler

All business logic is in the modules, following black box principles.
"""

import logging
import logging.config as log_config
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as redis
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from shipyard.config.provider import ConfigProvider, EnvConfigProvider
from shipyard.logging_config import get_logging_config
from shipyard.modules.api import (
    DriftRequest,
    DriftResponse,
    HealthResponse,
    PipelineSummary,
    QueueResponse,
    RegisterPipelineRequest,
    RunResponse,
    TriggerRunRequest,
)
from shipyard.modules.auth import AuthModule
from shipyard.modules.config import get_config
from shipyard.modules.executor import ToolRunner, resolve_environment
from shipyard.modules.pipeline import PipelineDefinition, PipelineValidationError, StageGraph
from shipyard.modules.queue import RunQueue
from shipyard.modules.rollout import (
    HealthChecker,
    KubectlClient,
    KubectlError,
    Reconciler,
    RolloutCoordinator,
)
from shipyard.modules.runner import PipelineRunner
from shipyard.modules.runs import PipelineNotFoundError, PipelineStore, RunStore
from shipyard.modules.scheduler import Scheduler

# Get configuration
config = get_config()

log_config.dictConfig(get_logging_config(config.get("log_level", "INFO"), config.get("log_levels")))
logger = logging.getLogger("shipyard.api")

# Configuration provider (centralized config access)
config_provider: ConfigProvider = EnvConfigProvider()

# Module instances (initialized at startup)
redis_client: Optional[redis.Redis] = None
auth_module: Optional[AuthModule] = None
require_auth: bool = True
pipeline_store: Optional[PipelineStore] = None
run_store: Optional[RunStore] = None
run_queue: Optional[RunQueue] = None
scheduler: Optional[Scheduler] = None
reconciler: Optional[Reconciler] = None


async def get_redis_client() -> redis.Redis:
    """Create Redis client from configuration."""
    redis_url = f"redis://{config.get('redis_host')}:{config.get('redis_port')}/{config.get('redis_db')}"

    return redis.from_url(
        redis_url,
        password=config.get("redis_password"),  # Passed separately to avoid URL encoding issues
        encoding="utf-8",
        decode_responses=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize and cleanup resources.
    """
    global redis_client, auth_module, require_auth, pipeline_store, run_store
    global run_queue, scheduler, reconciler

    logger.info("Starting Shipyard API...")

    redis_client = await get_redis_client()

    auth_config = config_provider.get_auth_config()
    require_auth = auth_config.require_auth
    auth_module = AuthModule(auth_config.api_keys, redis_client)
    if not require_auth:
        logger.warning("Authentication disabled (REQUIRE_AUTH=false)")

    workspace = config.get("workspace_dir")
    tool_runner = ToolRunner(
        workspace=workspace,
        default_timeout=config.get("default_step_timeout"),
        max_output_chars=config.get("max_output_chars", 65536),
    )

    kube_config = config_provider.get_kubernetes_config()
    kubectl = KubectlClient(
        tool_runner,
        kubectl_bin=kube_config.kubectl_bin,
        base_args=kube_config.base_args,
        context=kube_config.context,
    )
    coordinator = RolloutCoordinator(kubectl, HealthChecker(), manifest_root=workspace)
    reconciler = Reconciler(kubectl, coordinator)

    pipeline_store = PipelineStore(redis_client)
    run_store = RunStore(redis_client, run_ttl=config.get("run_ttl"))
    run_queue = RunQueue(redis_client)
    runner = PipelineRunner(
        tool_runner, coordinator, max_parallel_stages=config.get("max_parallel_stages")
    )
    scheduler = Scheduler(
        pipeline_store,
        run_store,
        run_queue,
        runner,
        dispatch_interval=config.get("dispatch_interval"),
    )
    await scheduler.start()

    logger.info("Shipyard API started successfully")

    yield

    logger.info("Shutting down Shipyard API...")
    if scheduler:
        await scheduler.stop()
    if redis_client:
        await redis_client.close()
    logger.info("Shipyard API shutdown complete")


api_config = config_provider.get_api_config()

app = FastAPI(
    title="Shipyard API",
    description="Shipyard - pipeline scheduling and Kubernetes rollout coordination",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_config.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependency injection helpers


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, description="API key for authentication")
) -> str:
    """Verify API key and return the caller identity."""
    if not require_auth:
        return "anonymous"
    if not auth_module:
        raise HTTPException(503, "Service not initialized")

    result = await auth_module.authenticate(x_api_key)
    if not result.ok:
        raise HTTPException(401, "Invalid API key")

    return result.identity


def _require(*modules) -> None:
    if any(module is None for module in modules):
        raise HTTPException(503, "Service not initialized")


def _summary(pipeline: PipelineDefinition) -> PipelineSummary:
    graph = StageGraph(pipeline.stages, pipeline.groups)
    return PipelineSummary(
        name=pipeline.name,
        stages=graph.names,
        layers=graph.layers(),
        max_concurrent_runs=pipeline.max_concurrent_runs,
        timeout=pipeline.timeout,
        fail_fast=pipeline.fail_fast,
    )


async def _get_pipeline(name: str) -> PipelineDefinition:
    try:
        return await pipeline_store.get(name)
    except PipelineNotFoundError:
        raise HTTPException(404, f"Pipeline not found: {name}")


# Health


@app.get("/health", response_model=HealthResponse)
async def health():
    redis_status = "disconnected"
    if redis_client:
        try:
            await redis_client.ping()
            redis_status = "connected"
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            redis_status = "error"

    return HealthResponse(
        status="healthy" if redis_status == "connected" else "unhealthy",
        redis=redis_status,
        active_runs=len(scheduler.active_runs) if scheduler else None,
    )


# Pipeline Endpoints


@app.post("/api/v1/pipelines", response_model=PipelineSummary, status_code=201)
async def register_pipeline(
    request: RegisterPipelineRequest, identity: str = Depends(verify_api_key)
):
    """
    Register or replace a pipeline definition.

    Returns:
        201: Pipeline stored
        422: Definition invalid
    """
    _require(pipeline_store)
    try:
        pipeline = await pipeline_store.register(request.definition)
    except PipelineValidationError as e:
        raise HTTPException(422, str(e))

    logger.info(f"Pipeline {pipeline.name} registered by {identity}")
    return _summary(pipeline)


@app.get("/api/v1/pipelines", response_model=List[str])
async def list_pipelines(identity: str = Depends(verify_api_key)):
    _require(pipeline_store)
    return await pipeline_store.list_names()


@app.get("/api/v1/pipelines/{name}", response_model=PipelineSummary)
async def get_pipeline(name: str, identity: str = Depends(verify_api_key)):
    _require(pipeline_store)
    return _summary(await _get_pipeline(name))


@app.delete("/api/v1/pipelines/{name}", status_code=204)
async def delete_pipeline(name: str, identity: str = Depends(verify_api_key)):
    _require(pipeline_store)
    if not await pipeline_store.delete(name):
        raise HTTPException(404, f"Pipeline not found: {name}")


# Run Endpoints


@app.post("/api/v1/pipelines/{name}/runs", response_model=RunResponse, status_code=202)
async def trigger_run(
    name: str, request: TriggerRunRequest, identity: str = Depends(verify_api_key)
):
    """
    Queue a pipeline run.

    Returns:
        202: Run queued
        404: Unknown pipeline
    """
    _require(scheduler)
    try:
        run = await scheduler.submit(
            name, params=request.params, branch=request.branch, triggered_by=identity
        )
    except PipelineNotFoundError:
        raise HTTPException(404, f"Pipeline not found: {name}")
    return RunResponse(**run)


@app.get("/api/v1/pipelines/{name}/runs", response_model=List[RunResponse])
async def list_runs(
    name: str,
    limit: int = Query(20, ge=1, le=100),
    identity: str = Depends(verify_api_key),
):
    _require(run_store)
    return [RunResponse(**run) for run in await run_store.list_runs(name, limit)]


@app.get("/api/v1/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, identity: str = Depends(verify_api_key)):
    _require(run_store)
    run = await run_store.get_run(run_id)
    if not run:
        raise HTTPException(404, "Run not found")
    return RunResponse(**run)


@app.post("/api/v1/runs/{run_id}/cancel")
async def cancel_run(run_id: str, identity: str = Depends(verify_api_key)):
    """
    Cancel a queued or running run.

    Returns:
        200: Cancellation requested
        404: Run not found
        409: Run already finished
    """
    _require(scheduler, run_store)
    if await scheduler.cancel(run_id):
        logger.info(f"Run {run_id} cancelled by {identity}")
        return {"status": "cancelling", "run_id": run_id}

    run = await run_store.get_run(run_id)
    if not run:
        raise HTTPException(404, "Run not found")
    raise HTTPException(409, f"Run is {run['status']} and cannot be cancelled")


@app.get("/api/v1/pipelines/{name}/queue", response_model=QueueResponse)
async def get_queue(name: str, identity: str = Depends(verify_api_key)):
    _require(pipeline_store, run_queue)
    pipeline = await _get_pipeline(name)
    return QueueResponse(
        pipeline=name,
        queued=await run_queue.depth(name),
        running=await run_queue.running_count(name),
        max_concurrent_runs=pipeline.max_concurrent_runs,
    )


# Deployment State Endpoints


@app.post("/api/v1/pipelines/{name}/stages/{stage}/drift", response_model=DriftResponse)
async def stage_drift(
    name: str,
    stage: str,
    request: DriftRequest,
    identity: str = Depends(verify_api_key),
):
    """
    Compare a deploy stage's declared state with the cluster.

    With ``reconcile`` set, drift triggers a fresh rollout.
    """
    _require(pipeline_store, reconciler)
    pipeline = await _get_pipeline(name)
    try:
        stage_def = pipeline.get_stage(stage)
    except KeyError:
        raise HTTPException(404, f"Stage not found: {stage}")
    if stage_def.deploy is None:
        raise HTTPException(400, f"Stage {stage} has no deploy block")

    base = dict(request.params)
    base.update(
        {
            "BUILD_NUMBER": str(request.build_number),
            "BRANCH_NAME": request.branch or "",
            "PIPELINE_NAME": pipeline.name,
        }
    )
    env = resolve_environment(pipeline.environment, base)
    env = resolve_environment(stage_def.environment, env)

    try:
        report = await reconciler.reconcile(stage_def.deploy, env, apply=request.reconcile)
    except KubectlError as e:
        raise HTTPException(502, f"kubectl failed: {e}")

    if report.rollout:
        logger.info(
            f"Reconcile of {name}/{stage} by {identity}: rollout {report.rollout.state.value}"
        )
    data = report.to_dict()
    return DriftResponse(pipeline=name, stage=stage, **data)


def main():
    """Run the API server."""
    uvicorn.run(
        app,
        host=api_config.host,
        port=api_config.port,
        log_config=get_logging_config(config.get("log_level", "INFO"), config.get("log_levels")),
    )


if __name__ == "__main__":
    main()
