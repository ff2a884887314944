"""
Runner Module - Black Box Interface

Purpose: Execute a pipeline run over its stage graph
Interface: PipelineRunner.run()
Hidden: Task scheduling, fail-fast handling, timeouts, post actions
"""

from .runner import (
    TERMINAL_RUN_STATUSES,
    PipelineRunner,
    RunResult,
    RunStatus,
    StageResult,
    StageStatus,
)

__all__ = [
    "TERMINAL_RUN_STATUSES",
    "PipelineRunner",
    "RunResult",
    "RunStatus",
    "StageResult",
    "StageStatus",
]
