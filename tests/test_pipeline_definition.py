import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from shipyard.modules.pipeline import (
    PipelineValidationError,
    StepDefinition,
    load_pipeline,
    parse_pipeline,
)

SAMPLE_PIPELINE = os.path.join(
    os.path.dirname(__file__), "..", "pipelines", "task-manager.yaml"
)


def test_sample_pipeline_loads():
    """The bundled task-manager pipeline is valid"""
    pipeline = load_pipeline(SAMPLE_PIPELINE)

    assert pipeline.name == "task-manager"
    assert pipeline.max_concurrent_runs == 1
    assert pipeline.fail_fast is True
    assert [s.name for s in pipeline.stages] == [
        "checkout",
        "backend-build",
        "frontend-build",
        "backend-image",
        "frontend-image",
        "scan",
        "push",
        "deploy",
    ]
    assert pipeline.groups == {
        "build": ["backend-build", "frontend-build"],
        "images": ["backend-image", "frontend-image"],
    }
    assert set(pipeline.post) == {"always", "failure", "cleanup"}


def test_sample_pipeline_deploy_block():
    pipeline = load_pipeline(SAMPLE_PIPELINE)
    deploy = pipeline.get_stage("deploy")

    assert deploy.when_branch == "main"
    assert deploy.timeout == 900
    assert deploy.deploy.namespace == "${K8S_NAMESPACE}"
    assert deploy.deploy.render is True
    assert deploy.deploy.images["backend/backend"] == "${BACKEND_IMAGE}"
    assert deploy.deploy.deployments == ["backend", "frontend"]
    assert deploy.deploy.replicas == {"backend": 2, "frontend": 2}
    assert deploy.deploy.health_check.interval == 5.0
    assert deploy.deploy.health_check.retries == 10


def test_stages_default_to_sequential_dependencies():
    pipeline = parse_pipeline(
        """
name: seq
stages:
  - name: a
    steps: [echo a]
  - name: b
    steps: [echo b]
  - name: c
    steps: [echo c]
"""
    )

    assert pipeline.get_stage("a").depends_on == []
    assert pipeline.get_stage("b").depends_on == ["a"]
    assert pipeline.get_stage("c").depends_on == ["b"]


def test_parallel_group_is_flattened():
    """Branches share the group's dependencies; followers depend on every branch"""
    pipeline = parse_pipeline(
        """
name: par
stages:
  - name: checkout
    steps: [git status]
  - name: build
    fail_fast: true
    parallel:
      - name: api
        steps: [make api]
      - name: web
        steps: [make web]
  - name: publish
    steps: [make publish]
"""
    )

    api = pipeline.get_stage("api")
    assert api.group == "build"
    assert api.group_fail_fast is True
    assert api.depends_on == ["checkout"]
    assert pipeline.get_stage("web").depends_on == ["checkout"]
    assert pipeline.get_stage("publish").depends_on == ["api", "web"]


def test_depends_on_group_name_expands_to_branches():
    pipeline = parse_pipeline(
        """
name: fan
stages:
  - name: tests
    parallel:
      - name: unit
        steps: [make unit]
      - name: lint
        steps: [make lint]
  - name: docs
    depends_on: []
    steps: [make docs]
  - name: release
    depends_on: [tests, docs]
    steps: [make release]
"""
    )

    assert pipeline.get_stage("docs").depends_on == []
    assert pipeline.get_stage("release").depends_on == ["unit", "lint", "docs"]


def test_step_forms():
    pipeline = parse_pipeline(
        """
name: steps
stages:
  - name: only
    steps:
      - echo shell
      - [docker, build, -t, "${IMAGE}", .]
      - command: trivy image x
        name: scan
        continue_on_error: true
        timeout: 30
        env:
          TRIVY_QUIET: "true"
"""
    )
    shell, argv, mapping = pipeline.get_stage("only").steps

    assert shell.is_shell and shell.command == "echo shell"
    assert not argv.is_shell
    assert argv.command == ["docker", "build", "-t", "${IMAGE}", "."]
    assert mapping.display == "scan"
    assert mapping.continue_on_error is True
    assert mapping.timeout == 30
    assert mapping.env == {"TRIVY_QUIET": "true"}


def test_step_display_for_argv():
    step = StepDefinition(command=["npm", "run", "build"])
    assert step.display == "npm run build"


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("name: Bad_Name\nstages: [{name: a, steps: [x]}]", "name"),
        ("name: ok\nstages: []", "at least one stage"),
        ("name: ok\nstages: [{name: a}]", "needs steps or a deploy block"),
        ("name: ok\nstages: [{name: a, steps: [x]}, {name: a, steps: [y]}]", "duplicate stage name"),
        ("name: ok\nstages: [{name: a, steps: [x], depends_on: [ghost]}]", "unknown stage"),
        ("name: ok\nstages: [{name: a, steps: [x], when: {tag: v1}}]", "unsupported conditions"),
        ("name: ok\nstages: [{name: a, steps: [{command: ''}]}]", "command is required"),
        ("name: ok\nstages: [{name: a, steps: [x]}]\npost: {sometimes: [y]}", "unknown conditions"),
        ("name: ok\nmax_concurrent_runs: 0\nstages: [{name: a, steps: [x]}]", "greater than or equal to 1"),
        ("name: ok\nstages: [{name: a, steps: [x]}\n", "invalid YAML"),
    ],
)
def test_invalid_pipelines_are_rejected(text, fragment):
    with pytest.raises(PipelineValidationError) as exc_info:
        parse_pipeline(text)
    assert fragment in str(exc_info.value)


def test_cycle_is_rejected():
    with pytest.raises(PipelineValidationError) as exc_info:
        parse_pipeline(
            """
name: loop
stages:
  - name: a
    depends_on: [c]
    steps: [x]
  - name: b
    depends_on: [a]
    steps: [x]
  - name: c
    depends_on: [b]
    steps: [x]
"""
        )
    assert "cycle" in str(exc_info.value)
    assert exc_info.value.field_path == "stages"


def test_nested_parallel_is_rejected():
    with pytest.raises(PipelineValidationError, match="nested parallel"):
        parse_pipeline(
            """
name: nested
stages:
  - name: outer
    parallel:
      - name: inner
        parallel:
          - name: deep
            steps: [x]
"""
        )


def test_deploy_requires_namespace_and_targets():
    with pytest.raises(PipelineValidationError) as exc_info:
        parse_pipeline("name: d\nstages: [{name: a, deploy: {manifests: [k8s/a.yaml]}}]")
    assert exc_info.value.field_path == "stages[0].deploy.namespace"

    with pytest.raises(PipelineValidationError, match="manifests or images"):
        parse_pipeline("name: d\nstages: [{name: a, deploy: {namespace: prod}}]")

    with pytest.raises(PipelineValidationError, match="deployment/container"):
        parse_pipeline(
            "name: d\nstages: [{name: a, deploy: {namespace: prod, images: {backend: 'x:1'}}}]"
        )


def test_deploy_defaults():
    pipeline = parse_pipeline(
        "name: d\nstages: [{name: a, deploy: {namespace: prod, images: {api/app: 'api:1'}}}]"
    )
    deploy = pipeline.get_stage("a").deploy

    assert deploy.deployments == ["api"]
    assert deploy.rollout_timeout == 300
    assert deploy.rollback_on_failure is True
    assert deploy.render is False
    assert deploy.health_check is None


def test_when_branch():
    pipeline = parse_pipeline(
        "name: w\nstages: [{name: a, steps: [x], when: {branch: main}}, {name: b, steps: [y]}]"
    )

    assert pipeline.get_stage("a").applies_to("main")
    assert not pipeline.get_stage("a").applies_to("feature/x")
    assert not pipeline.get_stage("a").applies_to(None)
    assert pipeline.get_stage("b").applies_to(None)


def test_health_check_status_must_be_an_integer():
    with pytest.raises(PipelineValidationError) as exc_info:
        parse_pipeline(
            """
name: d
stages:
  - name: a
    deploy:
      namespace: prod
      images: {api/app: "api:1"}
      health_check: {url: "http://api/health", expected_status: ok}
"""
        )
    assert exc_info.value.field_path == "stages[0].deploy.health_check.expected_status"


@pytest.mark.parametrize(
    "text, field_path",
    [
        (
            "name: d\nstages: [{name: a, deploy: {namespace: prod, images: {api/app: 'api:1'}, "
            "rollback_on_failure: 'false'}}]",
            "stages[0].deploy.rollback_on_failure",
        ),
        ("name: d\nfail_fast: 'no'\nstages: [{name: a, steps: [x]}]", "fail_fast"),
        (
            "name: d\nstages: [{name: a, steps: [{command: x, continue_on_error: 'false'}]}]",
            "stages[0].steps[0].continue_on_error",
        ),
    ],
)
def test_quoted_booleans_are_rejected(text, field_path):
    with pytest.raises(PipelineValidationError) as exc_info:
        parse_pipeline(text)
    assert exc_info.value.field_path == field_path


def test_unknown_keys_are_rejected():
    with pytest.raises(PipelineValidationError) as exc_info:
        parse_pipeline("name: d\nstages: [{name: a, steps: [{command: x, continue_on_eror: true}]}]")
    assert exc_info.value.field_path == "stages[0].steps[0].continue_on_eror"
