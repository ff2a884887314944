"""
Rollout Coordinator.

Drives one deployment through its lifecycle:

    pending -> applying -> waiting -> verifying -> succeeded
                   \\          \\          \\
                    +----------+----------+--> failed -> rolling_back -> rolled_back
                                                                   \\--> rollback_failed

Kubernetes does the actual pod replacement; the coordinator sequences the
kubectl calls, waits on them and decides whether to undo.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from shipyard.modules.executor import StepResult, interpolate
from shipyard.modules.pipeline import DeployDefinition

from .health import HealthChecker
from .kubectl import KubectlClient, KubectlError, changed_deployments

logger = logging.getLogger("shipyard.rollout")


class RolloutState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    WAITING = "waiting"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


TRANSITIONS = {
    RolloutState.PENDING: {RolloutState.APPLYING, RolloutState.FAILED},
    RolloutState.APPLYING: {RolloutState.WAITING, RolloutState.FAILED},
    RolloutState.WAITING: {RolloutState.VERIFYING, RolloutState.SUCCEEDED, RolloutState.FAILED},
    RolloutState.VERIFYING: {RolloutState.SUCCEEDED, RolloutState.FAILED},
    RolloutState.FAILED: {RolloutState.ROLLING_BACK},
    RolloutState.ROLLING_BACK: {RolloutState.ROLLED_BACK, RolloutState.ROLLBACK_FAILED},
    RolloutState.SUCCEEDED: set(),
    RolloutState.ROLLED_BACK: set(),
    RolloutState.ROLLBACK_FAILED: set(),
}

TERMINAL_STATES = {
    RolloutState.SUCCEEDED,
    RolloutState.FAILED,
    RolloutState.ROLLED_BACK,
    RolloutState.ROLLBACK_FAILED,
}


class RolloutFailure(RuntimeError):
    """A rollout step completed but the deployment is not in the desired state."""


class InvalidTransitionError(RuntimeError):
    """Raised on a state change the rollout lifecycle does not allow."""

    def __init__(self, current: RolloutState, target: RolloutState):
        self.current = current
        self.target = target
        super().__init__(f"Invalid rollout transition {current.value} -> {target.value}")


@dataclass
class Rollout:
    """State of one rollout."""

    namespace: str
    deployments: List[str]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: RolloutState = RolloutState.PENDING
    history: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None
    applied: bool = False
    # Deployments with a new revision from this rollout; the only ones undone
    changed: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RolloutState.SUCCEEDED

    def transition(self, target: RolloutState, message: str = "") -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        logger.info(f"Rollout {self.id} ({self.namespace}): {self.state.value} -> {target.value}"
                    + (f" ({message})" if message else ""))
        self.state = target
        self.history.append(
            {
                "state": target.value,
                "at": datetime.now(UTC).isoformat(),
                "message": message,
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "deployments": list(self.deployments),
            "state": self.state.value,
            "history": list(self.history),
            "error": self.error,
            "changed": list(self.changed),
        }


class RolloutCoordinator:
    """Applies manifests, waits for rollouts and verifies health."""

    def __init__(
        self,
        kubectl: KubectlClient,
        health_checker: Optional[HealthChecker] = None,
        manifest_root: Optional[str] = None,
    ):
        self.kubectl = kubectl
        self.health_checker = health_checker or HealthChecker()
        self.manifest_root = Path(manifest_root) if manifest_root else None
        self._locks: Dict[Tuple[Optional[str], str], asyncio.Lock] = {}
        self._latest: Dict[Tuple[Optional[str], str], Rollout] = {}

    def _lock_for(self, namespace: str) -> asyncio.Lock:
        key = (self.kubectl.context, namespace)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_busy(self, namespace: str) -> bool:
        """Whether a rollout currently holds the namespace."""
        lock = self._locks.get((self.kubectl.context, namespace))
        return bool(lock and lock.locked())

    def latest(self, namespace: str) -> Optional[Rollout]:
        """Most recent rollout started for the namespace, finished or not."""
        return self._latest.get((self.kubectl.context, namespace))

    def _read_manifest(self, manifest: str) -> str:
        path = Path(manifest)
        if not path.is_absolute() and self.manifest_root:
            path = self.manifest_root / path
        return path.read_text(encoding="utf-8")

    async def deploy(
        self, definition: DeployDefinition, env: Optional[Mapping[str, str]] = None
    ) -> Rollout:
        """
        Run a rollout to completion.

        Only one rollout per (context, namespace) runs at a time; later
        callers wait for the lock.

        Returns:
            The finished Rollout. Failures are reported through its state,
            not raised. Cancellation is re-raised once any rollback is done.
        """
        env = dict(env or {})
        namespace = interpolate(definition.namespace, env)
        rollout = Rollout(namespace=namespace, deployments=list(definition.deployments))
        self._latest[(self.kubectl.context, namespace)] = rollout

        lock = self._lock_for(namespace)
        if lock.locked():
            logger.info(f"Rollout {rollout.id} waiting for namespace {namespace}")
        async with lock:
            try:
                await self._apply(rollout, definition, env)
                await self._wait(rollout, definition)
                if definition.health_check:
                    await self._verify(rollout, definition, env)
                else:
                    rollout.transition(RolloutState.SUCCEEDED, "rollout complete")
            except (KubectlError, OSError, RolloutFailure) as e:
                await self._fail(rollout, definition, str(e))
            except asyncio.CancelledError:
                # Stage timeout or run cancel; undo before handing the cancel on
                await asyncio.shield(self._fail(rollout, definition, "rollout interrupted"))
                raise
        return rollout

    async def _fail(self, rollout: Rollout, definition: DeployDefinition, error: str) -> None:
        rollout.error = error
        rollout.transition(RolloutState.FAILED, error)
        if not definition.rollback_on_failure:
            return
        if rollout.changed:
            await self._rollback(rollout)
        elif rollout.applied:
            logger.info(f"Rollout {rollout.id}: no deployment got a new revision, nothing to undo")

    async def _apply(
        self, rollout: Rollout, definition: DeployDefinition, env: Mapping[str, str]
    ) -> None:
        rollout.transition(RolloutState.APPLYING)
        for manifest in definition.manifests:
            content = None
            if definition.render:
                content = interpolate(self._read_manifest(manifest), env)
            result = await self.kubectl.apply(manifest, rollout.namespace, content=content)
            self._record_changes(rollout, result)

        for target, image in definition.images.items():
            deployment, container = target.split("/", 1)
            result = await self.kubectl.set_image(
                deployment, container, interpolate(image, env), rollout.namespace
            )
            self._record_changes(rollout, result)

        for deployment, replicas in definition.replicas.items():
            await self.kubectl.scale(deployment, replicas, rollout.namespace)
            rollout.applied = True

    @staticmethod
    def _record_changes(rollout: Rollout, result: StepResult) -> None:
        rollout.applied = True
        for name in changed_deployments(result):
            if name not in rollout.changed:
                rollout.changed.append(name)

    async def _wait(self, rollout: Rollout, definition: DeployDefinition) -> None:
        rollout.transition(RolloutState.WAITING, ", ".join(definition.deployments))
        if not definition.deployments:
            return
        results = await asyncio.gather(
            *(
                self.kubectl.rollout_status(name, rollout.namespace, definition.rollout_timeout)
                for name in definition.deployments
            ),
            return_exceptions=True,
        )
        failures = []
        for name, result in zip(definition.deployments, results):
            if isinstance(result, KubectlError):
                failures.append(f"{name}: {result}")
            elif isinstance(result, BaseException):
                raise result
        if failures:
            raise RolloutFailure("rollout did not complete: " + "; ".join(failures))

    async def _verify(
        self, rollout: Rollout, definition: DeployDefinition, env: Mapping[str, str]
    ) -> None:
        check = definition.health_check
        rollout.transition(RolloutState.VERIFYING, check.url)
        result = await self.health_checker.wait_healthy(check, url=interpolate(check.url, env))
        if not result.healthy:
            detail = result.error or f"status {result.status_code}"
            raise RolloutFailure(
                f"health check failed after {result.attempts} attempts: {detail}"
            )
        rollout.transition(RolloutState.SUCCEEDED, f"healthy after {result.attempts} attempt(s)")

    async def _rollback(self, rollout: Rollout) -> None:
        rollout.transition(RolloutState.ROLLING_BACK)
        errors = []
        for name in rollout.changed:
            try:
                await self.kubectl.rollout_undo(name, rollout.namespace)
            except KubectlError as e:
                errors.append(str(e))
        if errors:
            rollout.error = f"{rollout.error}; rollback failed: {'; '.join(errors)}"
            rollout.transition(RolloutState.ROLLBACK_FAILED, "; ".join(errors))
        else:
            rollout.transition(RolloutState.ROLLED_BACK)
