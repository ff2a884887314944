"""
Pipeline definition model.

Pipelines are written in YAML and validated with pydantic. The YAML layout
(``PipelineSpec``/``StageSpec``) is flattened into ``PipelineDefinition``,
where every parallel branch is a stage of its own. Dependency validation
(unknown names, cycles) is done by StageGraph, which every loaded pipeline
builds once.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveFloat,
    StrictBool,
    ValidationError,
    conint,
    field_validator,
    model_validator,
)

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")

POST_CONDITIONS = ("always", "aborted", "failure", "success", "unstable", "cleanup")

PositiveCount = conint(strict=True, ge=1)
HttpStatus = conint(strict=True, ge=100, le=599)
ReplicaCount = conint(strict=True, ge=0)


class PipelineValidationError(ValueError):
    """Raised when a pipeline definition is malformed."""

    def __init__(self, message: str, field_path: Optional[str] = None):
        self.field_path = field_path
        if field_path:
            message = f"{field_path}: {message}"
        super().__init__(message)

    @classmethod
    def from_validation_error(cls, error: ValidationError) -> "PipelineValidationError":
        """Report the first pydantic error with a ``stages[0].deploy``-style path."""
        first = error.errors()[0]
        message = first["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        return cls(message, _format_loc(first["loc"]) or None)


def _format_loc(loc: Tuple[Union[int, str], ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif path:
            path += f".{part}"
        else:
            path = str(part)
    return path


def _string_map(value: Any) -> Any:
    # YAML scalars (numbers, booleans, null) are accepted as variable values
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    return value


def _string_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StepDefinition(_Strict):
    """
    One external tool invocation.

    A string command runs through ``sh -c``; a list command is exec'd
    directly with ``${VAR}`` interpolation applied to each argument.
    """

    command: Union[str, List[str]]
    name: Optional[str] = None
    continue_on_error: StrictBool = False
    timeout: Optional[PositiveCount] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def expand_short_forms(cls, data: Any) -> Any:
        if isinstance(data, (str, list)):
            return {"command": data}
        return data

    @field_validator("command", mode="before")
    @classmethod
    def command_must_not_be_empty(cls, v: Any) -> Any:
        if isinstance(v, list):
            if not v:
                raise ValueError("command must not be empty")
            return [str(arg) for arg in v]
        if not isinstance(v, str) or not v.strip():
            raise ValueError("command is required")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v: Any) -> Any:
        return _string_map(v)

    @property
    def is_shell(self) -> bool:
        return isinstance(self.command, str)

    @property
    def display(self) -> str:
        if self.name:
            return self.name
        if self.is_shell:
            return self.command
        return " ".join(self.command)


class HealthCheckDefinition(_Strict):
    """HTTP endpoint polled after a rollout completes."""

    url: str = Field(min_length=1)
    expected_status: HttpStatus = 200
    retries: PositiveCount = 10
    interval: PositiveFloat = 3.0
    timeout: PositiveFloat = 5.0


class DeployDefinition(_Strict):
    """Kubernetes rollout performed by a deploy stage."""

    namespace: str = Field(min_length=1)
    manifests: List[str] = Field(default_factory=list)
    deployments: List[str] = Field(default_factory=list)
    # "deployment/container" -> image reference
    images: Dict[str, str] = Field(default_factory=dict)
    replicas: Dict[str, ReplicaCount] = Field(default_factory=dict)
    render: StrictBool = False
    rollout_timeout: PositiveCount = 300
    rollback_on_failure: StrictBool = True
    health_check: Optional[HealthCheckDefinition] = None

    @field_validator("manifests", "deployments", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> Any:
        return _string_list(v)

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, v: Any) -> Any:
        return _string_map(v)

    @field_validator("replicas", mode="before")
    @classmethod
    def coerce_replicas(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("images")
    @classmethod
    def image_targets_name_a_container(cls, v: Dict[str, str]) -> Dict[str, str]:
        for target in v:
            if target.count("/") != 1 or not all(target.split("/")):
                raise ValueError(f"image target {target!r} must be 'deployment/container'")
        return v

    @model_validator(mode="after")
    def collect_deployments(self) -> "DeployDefinition":
        if not self.manifests and not self.images:
            raise ValueError("at least one of manifests or images is required")
        # Deployments touched by set-image or scale are always waited on
        touched = [target.split("/")[0] for target in self.images] + list(self.replicas)
        for name in touched:
            if name not in self.deployments:
                self.deployments.append(name)
        return self


class StageDefinition(BaseModel):
    """
    A node of the stage graph.

    Parallel groups are flattened at load time: each branch becomes its own
    stage carrying the group name in ``group``.
    """

    name: str
    steps: List[StepDefinition] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    when_branch: Optional[str] = None
    deploy: Optional[DeployDefinition] = None
    timeout: Optional[PositiveCount] = None
    group: Optional[str] = None
    group_fail_fast: bool = False
    environment: Dict[str, str] = Field(default_factory=dict)

    def applies_to(self, branch: Optional[str]) -> bool:
        """Whether the ``when`` branch condition lets this stage run."""
        if self.when_branch is None:
            return True
        return branch == self.when_branch


class StageSpec(_Strict):
    """A stage or parallel group as written in YAML."""

    name: str = Field(min_length=1)
    steps: List[StepDefinition] = Field(default_factory=list)
    depends_on: Optional[List[str]] = None
    when: Dict[str, str] = Field(default_factory=dict)
    deploy: Optional[DeployDefinition] = None
    timeout: Optional[PositiveCount] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    parallel: Optional[List["StageSpec"]] = None
    fail_fast: StrictBool = False

    @field_validator("steps", mode="before")
    @classmethod
    def coerce_steps(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, v: Any) -> Any:
        return _string_list(v)

    @field_validator("environment", mode="before")
    @classmethod
    def coerce_environment(cls, v: Any) -> Any:
        return _string_map(v)

    @field_validator("when", mode="before")
    @classmethod
    def only_branch_conditions(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            unknown = set(v) - {"branch"}
            if unknown:
                raise ValueError(f"unsupported conditions: {', '.join(sorted(unknown))}")
        return v

    @model_validator(mode="after")
    def check_body(self) -> "StageSpec":
        if self.parallel is not None:
            if not self.parallel:
                raise ValueError("parallel must be a non-empty list of stages")
            if any(branch.parallel is not None for branch in self.parallel):
                raise ValueError("nested parallel groups are not supported")
        elif not self.steps and self.deploy is None:
            raise ValueError("stage needs steps or a deploy block")
        return self

    def to_stage(self, default_depends_on: List[str]) -> StageDefinition:
        return StageDefinition(
            name=self.name,
            steps=self.steps,
            depends_on=list(default_depends_on if self.depends_on is None else self.depends_on),
            when_branch=self.when.get("branch"),
            deploy=self.deploy,
            timeout=self.timeout,
            environment=self.environment,
        )


class PipelineSpec(_Strict):
    """A pipeline document as written in YAML."""

    name: str
    stages: List[StageSpec]
    environment: Dict[str, str] = Field(default_factory=dict)
    post: Dict[str, List[StepDefinition]] = Field(default_factory=dict)
    max_concurrent_runs: PositiveCount = 1
    timeout: PositiveCount = 3600
    fail_fast: StrictBool = True

    @field_validator("name")
    @classmethod
    def name_must_be_slug(cls, v: str) -> str:
        if not NAME_PATTERN.match(v):
            raise ValueError("must match [a-z0-9-] and start/end with an alphanumeric")
        return v

    @field_validator("stages")
    @classmethod
    def stages_must_not_be_empty(cls, v: List[StageSpec]) -> List[StageSpec]:
        if not v:
            raise ValueError("at least one stage is required")
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def coerce_environment(cls, v: Any) -> Any:
        return _string_map(v)

    @field_validator("post", mode="before")
    @classmethod
    def known_post_conditions(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            unknown = set(v) - set(POST_CONDITIONS)
            if unknown:
                raise ValueError(f"unknown conditions: {', '.join(sorted(unknown))}")
        return v


class PipelineDefinition(BaseModel):
    """A parsed, validated pipeline."""

    name: str
    stages: List[StageDefinition]
    environment: Dict[str, str] = Field(default_factory=dict)
    post: Dict[str, List[StepDefinition]] = Field(default_factory=dict)
    max_concurrent_runs: int = 1
    timeout: int = 3600
    fail_fast: bool = True
    groups: Dict[str, List[str]] = Field(default_factory=dict)

    def get_stage(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @classmethod
    def from_dict(cls, data: Any) -> "PipelineDefinition":
        """
        Build a pipeline from its decoded YAML form.

        Raises:
            PipelineValidationError: if any field is malformed, or the stage
                graph has unknown dependencies or cycles
        """
        if not isinstance(data, dict):
            raise PipelineValidationError("pipeline must be a mapping")
        try:
            spec = PipelineSpec.model_validate(data)
        except ValidationError as e:
            raise PipelineValidationError.from_validation_error(e) from None

        stages: List[StageDefinition] = []
        groups: Dict[str, List[str]] = {}
        previous: List[str] = []

        for index, raw in enumerate(spec.stages):
            depends_on = list(previous) if raw.depends_on is None else raw.depends_on
            if raw.parallel is None:
                stage = raw.to_stage(depends_on)
                stages.append(stage)
                previous = [stage.name]
                continue

            if raw.name in groups:
                raise PipelineValidationError(
                    f"duplicate group name {raw.name!r}", f"stages[{index}].name"
                )
            members = []
            for branch in raw.parallel:
                stage = branch.to_stage(depends_on)
                stage.group = raw.name
                stage.group_fail_fast = raw.fail_fast
                stages.append(stage)
                members.append(stage.name)
            groups[raw.name] = members
            previous = members

        seen = set()
        for stage in stages:
            if stage.name in seen or stage.name in groups:
                raise PipelineValidationError(
                    f"duplicate stage name {stage.name!r}", "stages"
                )
            seen.add(stage.name)

        # Dependencies on a group name mean "all of its branches"
        for stage in stages:
            expanded: List[str] = []
            for dep in stage.depends_on:
                for target in groups.get(dep, [dep]):
                    if target not in expanded:
                        expanded.append(target)
            stage.depends_on = expanded

        pipeline = cls(
            name=spec.name,
            stages=stages,
            environment=spec.environment,
            post=spec.post,
            max_concurrent_runs=spec.max_concurrent_runs,
            timeout=spec.timeout,
            fail_fast=spec.fail_fast,
            groups=groups,
        )

        # Deferred to avoid a circular import; graph.py imports this module.
        from .graph import StageGraph

        StageGraph(pipeline.stages, groups)
        return pipeline


def parse_pipeline(text: str) -> PipelineDefinition:
    """Parse a YAML pipeline document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PipelineValidationError(f"invalid YAML: {e}") from e
    return PipelineDefinition.from_dict(data)


def load_pipeline(path: Union[str, Path]) -> PipelineDefinition:
    """Load and validate a pipeline file."""
    with open(path, "r", encoding="utf-8") as f:
        return parse_pipeline(f.read())
