"""
Pipeline Module - Black Box Interface

Purpose: Pipeline-as-code model, loading and validation
Interface: load_pipeline(), parse_pipeline(), StageGraph
Hidden: YAML layout, parallel group flattening, dependency expansion
"""

from .definition import (
    DeployDefinition,
    HealthCheckDefinition,
    PipelineDefinition,
    PipelineValidationError,
    StageDefinition,
    StepDefinition,
    load_pipeline,
    parse_pipeline,
)
from .graph import StageGraph

__all__ = [
    "DeployDefinition",
    "HealthCheckDefinition",
    "PipelineDefinition",
    "PipelineValidationError",
    "StageDefinition",
    "StageGraph",
    "StepDefinition",
    "load_pipeline",
    "parse_pipeline",
]
