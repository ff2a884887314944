import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from shipyard.modules.pipeline import (
    PipelineValidationError,
    StageDefinition,
    StageGraph,
    StepDefinition,
    load_pipeline,
)

SAMPLE_PIPELINE = os.path.join(
    os.path.dirname(__file__), "..", "pipelines", "task-manager.yaml"
)


def stage(name, depends_on=None, group=None, group_fail_fast=False):
    return StageDefinition(
        name=name,
        steps=[StepDefinition(command=f"echo {name}")],
        depends_on=depends_on or [],
        group=group,
        group_fail_fast=group_fail_fast,
    )


def test_layers_of_sample_pipeline():
    pipeline = load_pipeline(SAMPLE_PIPELINE)
    graph = StageGraph(pipeline.stages, pipeline.groups)

    assert graph.layers() == [
        ["checkout"],
        ["backend-build", "frontend-build"],
        ["backend-image", "frontend-image"],
        ["scan"],
        ["push"],
        ["deploy"],
    ]
    assert len(graph) == 8
    assert "scan" in graph
    assert "nope" not in graph


def test_diamond():
    graph = StageGraph(
        [
            stage("a"),
            stage("b", ["a"]),
            stage("c", ["a"]),
            stage("d", ["b", "c"]),
        ]
    )

    assert graph.layers() == [["a"], ["b", "c"], ["d"]]
    assert graph.dependencies("d") == ["b", "c"]
    assert graph.dependents("a") == ["b", "c"]
    assert graph.downstream("a") == {"b", "c", "d"}
    assert graph.downstream("d") == set()


def test_layers_keep_declaration_order():
    graph = StageGraph([stage("root"), stage("zeta", ["root"]), stage("alpha", ["root"])])

    assert graph.layers() == [["root"], ["zeta", "alpha"]]


def test_unknown_dependency():
    with pytest.raises(PipelineValidationError, match="unknown stage 'ghost'"):
        StageGraph([stage("a", ["ghost"])])


def test_self_dependency():
    with pytest.raises(PipelineValidationError, match="depends on itself"):
        StageGraph([stage("a", ["a"])])


def test_cycle_reports_stuck_stages():
    with pytest.raises(PipelineValidationError) as exc_info:
        StageGraph([stage("start"), stage("x", ["start", "y"]), stage("y", ["x"])])

    message = str(exc_info.value)
    assert "cycle" in message
    assert "x" in message and "y" in message
    assert "start" not in message.split("cycle")[1]


def test_siblings_only_for_fail_fast_groups():
    groups = {"build": ["api", "web"], "lint": ["py", "js"]}
    graph = StageGraph(
        [
            stage("api", group="build", group_fail_fast=True),
            stage("web", group="build", group_fail_fast=True),
            stage("py", group="lint"),
            stage("js", group="lint"),
        ],
        groups,
    )

    assert graph.siblings("api") == ["web"]
    assert graph.siblings("py") == []
