"""Stage dependency graph."""

from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from .definition import PipelineValidationError, StageDefinition


class StageGraph:
    """
    Directed acyclic graph of stages.

    Construction validates the graph: every dependency must name a stage
    and there must be no cycles.
    """

    def __init__(
        self,
        stages: Iterable[StageDefinition],
        groups: Optional[Dict[str, List[str]]] = None,
    ):
        self._stages: Dict[str, StageDefinition] = {}
        self._order: List[str] = []
        for stage in stages:
            self._stages[stage.name] = stage
            self._order.append(stage.name)

        self._groups = groups or {}
        self._dependents: Dict[str, List[str]] = {name: [] for name in self._order}

        for name in self._order:
            for dep in self._stages[name].depends_on:
                if dep not in self._stages:
                    raise PipelineValidationError(
                        f"stage {name!r} depends on unknown stage {dep!r}", "stages"
                    )
                if dep == name:
                    raise PipelineValidationError(
                        f"stage {name!r} depends on itself", "stages"
                    )
                self._dependents[dep].append(name)

        self._layers = self._compute_layers()

    def _compute_layers(self) -> List[List[str]]:
        """Kahn's algorithm, grouping stages by depth."""
        in_degree = {name: len(set(self._stages[name].depends_on)) for name in self._order}
        current = [name for name in self._order if in_degree[name] == 0]
        layers = []
        visited = 0

        while current:
            layers.append(current)
            visited += len(current)
            following = []
            for name in current:
                for child in self._dependents[name]:
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        following.append(child)
            # Keep declaration order within a layer
            following.sort(key=self._order.index)
            current = following

        if visited != len(self._order):
            stuck = [name for name in self._order if in_degree[name] > 0]
            raise PipelineValidationError(
                f"dependency cycle between stages: {', '.join(stuck)}", "stages"
            )
        return layers

    def __contains__(self, name: str) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._order)

    @property
    def names(self) -> List[str]:
        return list(self._order)

    def stage(self, name: str) -> StageDefinition:
        return self._stages[name]

    def dependencies(self, name: str) -> List[str]:
        return list(self._stages[name].depends_on)

    def dependents(self, name: str) -> List[str]:
        return list(self._dependents[name])

    def downstream(self, name: str) -> Set[str]:
        """All stages that transitively depend on ``name``."""
        seen: Set[str] = set()
        queue = deque(self._dependents[name])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents[current])
        return seen

    def layers(self) -> List[List[str]]:
        """Topological levels; stages in one level can run concurrently."""
        return [list(layer) for layer in self._layers]

    def siblings(self, name: str) -> List[str]:
        """Other branches of ``name``'s parallel group if the group is fail-fast."""
        stage = self._stages[name]
        if not stage.group or not stage.group_fail_fast:
            return []
        return [s for s in self._groups.get(stage.group, []) if s != name]
