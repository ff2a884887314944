"""kubectl wrapper used by rollouts and reconciliation."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from shipyard.modules.executor import StepResult, ToolRunner

logger = logging.getLogger("shipyard.rollout.kubectl")

# "deployment.apps/backend configured", "deployment.apps/backend image updated"
CHANGED_DEPLOYMENT = re.compile(r"^deployment(?:\.apps)?/(\S+) (?:configured|image updated)$")


def changed_deployments(result: StepResult) -> List[str]:
    """
    Deployments whose pod template an apply or set-image call changed.

    kubectl reports untouched objects as "unchanged" (apply) or prints
    nothing (set image); newly created deployments have no earlier
    revision to return to. Neither is listed.
    """
    names = []
    for line in result.stdout.splitlines():
        match = CHANGED_DEPLOYMENT.match(line.strip())
        if match and match.group(1) not in names:
            names.append(match.group(1))
    return names


class KubectlError(RuntimeError):
    """A kubectl invocation exited unsuccessfully."""

    def __init__(self, args: List[str], result: StepResult):
        self.kubectl_args = args
        self.result = result
        detail = (result.stderr or result.error or result.stdout or "").strip()
        super().__init__(
            f"kubectl {' '.join(args)} failed ({result.status.value}, rc={result.return_code}): {detail}"
        )


class KubectlClient:
    """Thin async client over the kubectl binary."""

    def __init__(
        self,
        tool_runner: ToolRunner,
        kubectl_bin: str = "kubectl",
        base_args: Optional[List[str]] = None,
        context: Optional[str] = None,
    ):
        """
        Args:
            tool_runner: Runner used to launch kubectl
            kubectl_bin: kubectl executable
            base_args: Global flags (--kubeconfig, --context) for every call
            context: Name of the target cluster context, used for lock keys
        """
        self.tool_runner = tool_runner
        self.kubectl_bin = kubectl_bin
        self.base_args = list(base_args or [])
        self.context = context

    async def run(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        check: bool = True,
    ) -> StepResult:
        cmd = [self.kubectl_bin] + self.base_args + args
        result = await self.tool_runner.run_command(cmd, timeout=timeout, input=input)
        if check and not result.success:
            raise KubectlError(args, result)
        return result

    async def apply(
        self, manifest: str, namespace: str, content: Optional[str] = None
    ) -> StepResult:
        """Apply a manifest file, or rendered manifest text via stdin."""
        if content is not None:
            logger.info(f"Applying rendered {manifest} to namespace {namespace}")
            return await self.run(["apply", "-n", namespace, "-f", "-"], input=content)
        logger.info(f"Applying {manifest} to namespace {namespace}")
        return await self.run(["apply", "-n", namespace, "-f", manifest])

    async def set_image(
        self, deployment: str, container: str, image: str, namespace: str
    ) -> StepResult:
        logger.info(f"Setting image {deployment}/{container}={image} in {namespace}")
        return await self.run(
            ["set", "image", f"deployment/{deployment}", f"{container}={image}", "-n", namespace]
        )

    async def scale(self, deployment: str, replicas: int, namespace: str) -> StepResult:
        logger.info(f"Scaling deployment/{deployment} to {replicas} in {namespace}")
        return await self.run(
            ["scale", f"deployment/{deployment}", f"--replicas={replicas}", "-n", namespace]
        )

    async def rollout_status(
        self, deployment: str, namespace: str, timeout: int
    ) -> StepResult:
        """Block until the deployment's rollout completes or kubectl gives up."""
        return await self.run(
            [
                "rollout",
                "status",
                f"deployment/{deployment}",
                "-n",
                namespace,
                f"--timeout={timeout}s",
            ],
            # Leave kubectl room to report its own timeout
            timeout=timeout + 30,
        )

    async def rollout_undo(self, deployment: str, namespace: str) -> StepResult:
        logger.warning(f"Rolling back deployment/{deployment} in {namespace}")
        return await self.run(["rollout", "undo", f"deployment/{deployment}", "-n", namespace])

    async def get_deployment(self, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a Deployment object.

        Returns:
            Parsed object, or None if the deployment does not exist
        """
        result = await self.run(
            ["get", "deployment", name, "-n", namespace, "-o", "json"], check=False
        )
        if not result.success:
            if "NotFound" in result.stderr or "not found" in result.stderr:
                return None
            raise KubectlError(["get", "deployment", name], result)
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise KubectlError(["get", "deployment", name], result) from e
