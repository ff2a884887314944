"""
Shipyard API data models.

These models define the structure of data accepted and returned by the
HTTP API. Internal modules pass their own models and dicts; conversion
happens at the API edge.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from shipyard.modules.runner import RunStatus

PARAM_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# Request Models (API Input)


class RegisterPipelineRequest(BaseModel):
    """Request to register or replace a pipeline definition."""

    definition: str = Field(
        ..., description="Pipeline definition in YAML", min_length=1, max_length=200_000
    )


class TriggerRunRequest(BaseModel):
    """Request to queue a pipeline run."""

    params: Dict[str, str] = Field(
        default_factory=dict, description="Run parameters exposed to steps as environment variables"
    )
    branch: Optional[str] = Field(None, description="Source branch; drives `when: branch` conditions", max_length=255)

    @field_validator("params")
    @classmethod
    def validate_params(cls, v):
        """Parameter names must be valid environment variable names."""
        for name in v:
            if not PARAM_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid parameter name: {name}")
        return v


class DriftRequest(BaseModel):
    """Request a drift report for one deploy stage."""

    params: Dict[str, str] = Field(default_factory=dict)
    branch: Optional[str] = None
    build_number: int = Field(default=0, ge=0, description="BUILD_NUMBER used to render desired images")
    reconcile: bool = Field(default=False, description="Re-run the rollout if drift is found")


# Response Models (API Output)


class PipelineSummary(BaseModel):
    """Registered pipeline."""

    name: str
    stages: List[str]
    layers: List[List[str]]
    max_concurrent_runs: int
    timeout: int
    fail_fast: bool


class RunResponse(BaseModel):
    """Run record as returned by the API."""

    run_id: str
    pipeline: str
    build_number: int
    status: RunStatus
    branch: Optional[str] = None
    params: Dict[str, str] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    stages: Dict[str, Any] = Field(default_factory=dict)
    post: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class QueueResponse(BaseModel):
    """Queue and slot usage of a pipeline."""

    pipeline: str
    queued: int
    running: int
    max_concurrent_runs: int


class DriftItem(BaseModel):
    deployment: str
    field: str
    desired: Any = None
    actual: Any = None
    container: Optional[str] = None


class DriftResponse(BaseModel):
    """Desired vs. actual state of a deploy stage."""

    pipeline: str
    stage: str
    namespace: str
    in_sync: bool
    drift: List[DriftItem] = Field(default_factory=list)
    rollout: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status", pattern="^(healthy|unhealthy|degraded)$")
    redis: str = Field(..., description="Redis connection status")
    version: str = Field(default="1.0.0", description="API version")
    active_runs: Optional[int] = None
