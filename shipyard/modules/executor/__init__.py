"""
Executor Module - Black Box Interface

Purpose: Invoke external tools (mvn, npm, docker, trivy, kubectl)
Interface: ToolRunner.run(), resolve_environment()
Hidden: Subprocess handling, timeouts, output truncation
"""

from .tool_runner import (
    StepResult,
    StepStatus,
    ToolRunner,
    interpolate,
    resolve_environment,
)

__all__ = ["StepResult", "StepStatus", "ToolRunner", "interpolate", "resolve_environment"]
