#!/usr/bin/env python3
"""
Tool Runner - invokes external build and deploy tools.

Every stage step in a pipeline is a call out to an existing tool (mvn, npm,
docker, trivy, kubectl). This module runs those tools as subprocesses,
captures their output and reports the outcome as data: a non-zero exit
code is a StepResult, not an exception.
"""

import asyncio
import logging
import os
import re
import signal
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from shipyard.modules.pipeline import StepDefinition

logger = logging.getLogger("shipyard.executor")

VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class StepStatus(str, Enum):
    """Outcome of a single tool invocation."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class StepResult:
    """Result of running one step."""

    command: str
    status: StepStatus
    return_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: Optional[str] = None
    name: Optional[str] = None
    tolerated: bool = False

    @property
    def success(self) -> bool:
        return self.status == StepStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def interpolate(value: str, env: Mapping[str, str]) -> str:
    """
    Substitute ``${VAR}`` references; unknown names are left as written.

    Bare ``$VAR`` and ``$$`` pass through untouched so manifests and argv
    steps can carry literal dollar signs.
    """
    return VARIABLE_PATTERN.sub(lambda m: env.get(m.group(1), m.group(0)), value)


def resolve_environment(
    environment: Mapping[str, str], base: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Evaluate pipeline variables in declaration order.

    Each value may reference the base variables (run parameters, build
    number, branch) and any variable declared before it.

    Args:
        environment: Ordered mapping of variable name to template
        base: Variables available to every template

    Returns:
        Base variables merged with the evaluated environment
    """
    resolved = dict(base or {})
    for key, template in environment.items():
        resolved[key] = interpolate(template, resolved)
    return resolved


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return "...[truncated]...\n" + text[-limit:]


class ToolRunner:
    """Runs steps as subprocesses in a workspace directory."""

    def __init__(
        self,
        workspace: Optional[str] = None,
        default_timeout: int = 600,
        max_output_chars: int = 65536,
        shell: str = "/bin/sh",
        inherit_env: bool = True,
    ):
        """
        Initialize tool runner.

        Args:
            workspace: Working directory for commands (process cwd if None)
            default_timeout: Seconds before a step is killed when it sets no timeout
            max_output_chars: Tail of stdout/stderr kept per step
            shell: Shell used for string commands
            inherit_env: Whether tools see this process's environment
        """
        self.workspace = workspace
        self.default_timeout = default_timeout
        self.max_output_chars = max_output_chars
        self.shell = shell
        self.inherit_env = inherit_env

    def build_command(self, step: StepDefinition, env: Mapping[str, str]) -> List[str]:
        """Translate a step into argv."""
        if step.is_shell:
            # The shell expands variables itself from the process environment
            return [self.shell, "-c", step.command]
        return [interpolate(arg, env) for arg in step.command]

    def _process_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        process_env = dict(os.environ) if self.inherit_env else {}
        process_env.update({k: str(v) for k, v in env.items()})
        return process_env

    async def run(
        self,
        step: StepDefinition,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> StepResult:
        """
        Run one step.

        Args:
            step: Step to run
            env: Variables for interpolation and the child environment
            timeout: Overrides the step's and the runner's timeout
            input: Text written to the tool's stdin

        Returns:
            StepResult; only cancellation propagates as an exception
        """
        merged_env = dict(env or {})
        if step.env:
            merged_env.update({k: interpolate(v, merged_env) for k, v in step.env.items()})

        cmd = self.build_command(step, merged_env)
        limit = timeout or step.timeout or self.default_timeout
        result = await self.run_command(cmd, merged_env, limit, input=input)
        result.name = step.name
        if step.is_shell:
            result.command = step.command
        return result

    async def run_command(
        self,
        cmd: List[str],
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> StepResult:
        """Run an argv list and capture its outcome."""
        display = " ".join(cmd)
        limit = timeout or self.default_timeout
        logger.debug(f"Running: {display}")
        start_time = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start_time) * 1000)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workspace,
                env=self._process_env(env or {}),
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Failed to launch {cmd[0]}: {e}")
            return StepResult(
                command=display,
                status=StepStatus.ERROR,
                return_code=-1,
                error=str(e),
                duration_ms=elapsed_ms(),
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input.encode() if input is not None else None),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(f"Command timed out after {limit}s: {display}")
            return StepResult(
                command=display,
                status=StepStatus.TIMEOUT,
                return_code=-1,
                error=f"Command timed out after {limit}s",
                duration_ms=elapsed_ms(),
            )
        except asyncio.CancelledError:
            await self._kill(process)
            logger.info(f"Command cancelled: {display}")
            raise

        return_code = process.returncode
        status = StepStatus.SUCCESS if return_code == 0 else StepStatus.FAILED
        if status == StepStatus.FAILED:
            logger.warning(f"Command exited with {return_code}: {display}")

        return StepResult(
            command=display,
            status=status,
            return_code=return_code,
            stdout=_tail(stdout.decode(errors="replace"), self.max_output_chars),
            stderr=_tail(stderr.decode(errors="replace"), self.max_output_chars),
            duration_ms=elapsed_ms(),
        )

    @staticmethod
    async def _kill(process) -> None:
        # The child leads its own process group, so this also reaches whatever a shell step spawned
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()
