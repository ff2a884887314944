"""
API Module - Black Box Interface

Purpose: HTTP request/response contracts
Interface: Pydantic models used by the REST endpoints
Hidden: Field validation rules

The API layer only orchestrates - it contains no business logic.
"""

from .models import (
    DriftItem,
    DriftRequest,
    DriftResponse,
    HealthResponse,
    PipelineSummary,
    QueueResponse,
    RegisterPipelineRequest,
    RunResponse,
    TriggerRunRequest,
)

__all__ = [
    "DriftItem",
    "DriftRequest",
    "DriftResponse",
    "HealthResponse",
    "PipelineSummary",
    "QueueResponse",
    "RegisterPipelineRequest",
    "RunResponse",
    "TriggerRunRequest",
]
