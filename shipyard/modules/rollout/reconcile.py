"""
Desired vs. actual state reconciliation.

Compares what a deploy stage declares (images, replica counts, existence of
the deployments) with the live Deployment objects and re-runs the rollout
when they disagree.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from shipyard.modules.executor import interpolate
from shipyard.modules.pipeline import DeployDefinition

from .coordinator import Rollout, RolloutCoordinator
from .kubectl import KubectlClient

logger = logging.getLogger("shipyard.rollout.reconcile")


@dataclass
class Drift:
    deployment: str
    field: str  # "exists" | "image" | "replicas"
    desired: Any
    actual: Any
    container: Optional[str] = None


@dataclass
class ReconcileReport:
    namespace: str
    drift: List[Drift] = field(default_factory=list)
    rollout: Optional[Rollout] = None

    @property
    def in_sync(self) -> bool:
        return not self.drift

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "in_sync": self.in_sync,
            "drift": [asdict(d) for d in self.drift],
            "rollout": self.rollout.to_dict() if self.rollout else None,
        }


def _container_images(deployment: Dict[str, Any]) -> Dict[str, str]:
    containers = (
        deployment.get("spec", {}).get("template", {}).get("spec", {}).get("containers", [])
    )
    return {c.get("name"): c.get("image") for c in containers}


class Reconciler:
    """Detects and repairs drift for deploy stages."""

    def __init__(self, kubectl: KubectlClient, coordinator: RolloutCoordinator):
        self.kubectl = kubectl
        self.coordinator = coordinator

    async def diff(
        self, definition: DeployDefinition, env: Optional[Mapping[str, str]] = None
    ) -> ReconcileReport:
        """Compare the declared state with the cluster."""
        env = dict(env or {})
        namespace = interpolate(definition.namespace, env)
        report = ReconcileReport(namespace=namespace)

        desired_images: Dict[str, Dict[str, str]] = {}
        for target, image in definition.images.items():
            deployment, container = target.split("/", 1)
            desired_images.setdefault(deployment, {})[container] = interpolate(image, env)

        names = list(definition.deployments)
        for name in list(desired_images) + list(definition.replicas):
            if name not in names:
                names.append(name)

        for name in names:
            live = await self.kubectl.get_deployment(name, namespace)
            if live is None:
                report.drift.append(Drift(deployment=name, field="exists", desired=True, actual=False))
                continue

            actual_images = _container_images(live)
            for container, image in desired_images.get(name, {}).items():
                if actual_images.get(container) != image:
                    report.drift.append(
                        Drift(
                            deployment=name,
                            field="image",
                            desired=image,
                            actual=actual_images.get(container),
                            container=container,
                        )
                    )

            if name in definition.replicas:
                desired = definition.replicas[name]
                actual = live.get("status", {}).get("readyReplicas", 0) or 0
                if actual != desired:
                    report.drift.append(
                        Drift(deployment=name, field="replicas", desired=desired, actual=actual)
                    )

        if report.drift:
            logger.info(f"Drift detected in {namespace}: {len(report.drift)} difference(s)")
        return report

    async def reconcile(
        self,
        definition: DeployDefinition,
        env: Optional[Mapping[str, str]] = None,
        apply: bool = True,
    ) -> ReconcileReport:
        """Diff, then re-run the rollout if anything drifted and ``apply`` is set."""
        report = await self.diff(definition, env)
        if report.drift and apply:
            report.rollout = await self.coordinator.deploy(definition, env)
        return report
