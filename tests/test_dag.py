import pytest

from forgeci.dag import find_cycle, plan, step_order, topo_levels, validate
from forgeci.errors import CycleDetectedError, UnknownReference, ValidationError
from forgeci.model import CacheConfig, Pipeline, Stage, Step


def stage(name, *steps, depends_on=(), parallel=False):
    if not steps:
        steps = (Step(name="run", command=f"echo {name}"),)
    return Stage(name=name, steps=steps, depends_on=depends_on, parallel=parallel)


def assert_real_cycle(cycle, deps):
    assert cycle[0] == cycle[-1]
    for a, b in zip(cycle, cycle[1:]):
        assert b in deps[a], f"{a} -> {b} is not an edge"


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def test_valid_pipeline_passes():
    validate(Pipeline(stages=[stage("a"), stage("b", depends_on=["a"])]))


def test_unknown_stage_reference_names_missing_target():
    p = Pipeline(stages=[stage("build"), stage("test", depends_on=["biuld"])])

    with pytest.raises(ValidationError) as e:
        validate(p)

    assert e.value.unknown == [UnknownReference(stage="test", target="biuld")]
    assert "biuld" in str(e.value)
    assert not isinstance(e.value, CycleDetectedError)


def test_unknown_step_reference_is_scoped_to_its_stage():
    p = Pipeline(
        stages=[
            stage("a", Step(name="compile", command="make")),
            stage("b", Step(name="test", command="make test", depends_on=["compile"])),
        ]
    )

    with pytest.raises(ValidationError) as e:
        validate(p)

    assert e.value.unknown == [UnknownReference(stage="b", step="test", target="compile")]
    assert "step 'test' in stage 'b'" in str(e.value)


def test_all_unknown_references_are_reported_before_cycles():
    p = Pipeline(
        stages=[
            stage("a", depends_on=["b", "ghost"]),
            stage("b", Step(name="s", command="x", depends_on=["nope"]), depends_on=["a"]),
        ]
    )

    with pytest.raises(ValidationError) as e:
        validate(p)

    assert not isinstance(e.value, CycleDetectedError)
    assert {u.target for u in e.value.unknown} == {"ghost", "nope"}


def test_stage_cycle_reports_real_edges():
    stages = [
        stage("a", depends_on=["c"]),
        stage("b", depends_on=["a"]),
        stage("c", depends_on=["b"]),
    ]
    deps = {s.name: s.depends_on for s in stages}

    with pytest.raises(CycleDetectedError) as e:
        validate(Pipeline(stages=stages))

    assert e.value.scope == "stages"
    assert set(e.value.cycle) == {"a", "b", "c"}
    assert len(e.value.cycle) == 4
    assert_real_cycle(e.value.cycle, deps)
    assert "cycle detected" in str(e.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleDetectedError) as e:
        validate(Pipeline(stages=[stage("a", depends_on=["a"])]))
    assert e.value.cycle == ["a", "a"]


def test_cycle_report_excludes_nodes_outside_the_cycle():
    stages = [
        stage("entry", depends_on=["x"]),
        stage("x", depends_on=["y"]),
        stage("y", depends_on=["x"]),
    ]
    with pytest.raises(CycleDetectedError) as e:
        validate(Pipeline(stages=stages))
    assert "entry" not in e.value.cycle
    assert_real_cycle(e.value.cycle, {s.name: s.depends_on for s in stages})


def test_step_cycle_within_stage():
    s = stage(
        "build",
        Step(name="a", command="x", depends_on=["b"]),
        Step(name="b", command="y", depends_on=["a"]),
    )
    with pytest.raises(CycleDetectedError) as e:
        validate(Pipeline(stages=[s]))
    assert "build" in e.value.scope
    assert_real_cycle(e.value.cycle, {"a": ("b",), "b": ("a",)})


@pytest.mark.parametrize("command", ["", "   ", "\n\t"])
def test_empty_command_fails_validation(command):
    p = Pipeline(stages=[stage("s", Step(name="blank", command=command))])
    with pytest.raises(ValidationError) as e:
        validate(p)
    assert any("empty command" in m for m in e.value.problems)


def test_structural_problems_are_collected():
    p = Pipeline(
        stages=[
            stage("dup"),
            stage("dup"),
            Stage(name="empty", steps=[]),
            stage("steps", Step(name="x", command="a"), Step(name="x", command="b")),
        ],
        cache=CacheConfig(enabled=True, directories=["relative/dir"]),
    )
    with pytest.raises(ValidationError) as e:
        validate(p)

    text = "\n".join(e.value.problems)
    assert "duplicate stage name 'dup'" in text
    assert "stage 'empty' has no steps" in text
    assert "duplicate step name 'x'" in text
    assert "absolute path" in text


def test_empty_pipeline_is_invalid():
    with pytest.raises(ValidationError) as e:
        validate(Pipeline())
    assert "at least one stage or step" in str(e.value)


def test_legacy_pipeline_validates():
    validate(Pipeline(steps=[Step(command="echo hi")]))


# ----------------------------------------------------------------------
# Scheduling
# ----------------------------------------------------------------------

def test_independent_stages_share_a_batch():
    p = Pipeline(
        stages=[
            stage("build"),
            stage("lint"),
            stage("package", depends_on=["build", "lint"]),
        ]
    )

    batches = plan(p)

    assert [b.names for b in batches] == [["build", "lint"], ["package"]]
    assert [b.index for b in batches] == [0, 1]


def test_batches_respect_topological_order():
    stages = [
        stage("deploy", depends_on=["package", "e2e"]),
        stage("e2e", depends_on=["package"]),
        stage("setup"),
        stage("package", depends_on=["unit", "lint"]),
        stage("lint", depends_on=["setup"]),
        stage("unit", depends_on=["setup"]),
    ]
    batches = plan(Pipeline(stages=stages))

    position = {name: b.index for b in batches for name in b.names}
    for s in stages:
        for dep in s.depends_on:
            assert position[dep] < position[s.name]
    assert sorted(position) == sorted(s.name for s in stages)


def test_batch_keeps_declaration_order():
    p = Pipeline(stages=[stage("zeta"), stage("alpha"), stage("mid")])
    assert plan(p)[0].names == ["zeta", "alpha", "mid"]


def test_plan_rejects_invalid_pipelines():
    with pytest.raises(ValidationError):
        plan(Pipeline(stages=[stage("a", depends_on=["missing"])]))


def test_plan_normalizes_legacy_format():
    batches = plan(Pipeline(steps=[Step(command="a"), Step(command="b")]))
    assert len(batches) == 1
    assert batches[0].names == ["default"]
    assert [s.name for s in batches[0].stages[0].steps] == ["step-1", "step-2"]


def test_step_order_puts_dependencies_first():
    s = stage(
        "s",
        Step(name="test", command="t", depends_on=["build"]),
        Step(name="lint", command="l"),
        Step(name="build", command="b"),
    )
    assert [x.name for x in step_order(s)] == ["lint", "build", "test"]


def test_step_order_without_dependencies_is_declaration_order():
    s = stage("s", Step(name="c", command="1"), Step(name="a", command="2"), Step(name="b", command="3"))
    assert [x.name for x in step_order(s)] == ["c", "a", "b"]


def test_topo_levels_detects_leftover_cycle():
    with pytest.raises(CycleDetectedError) as e:
        topo_levels({"a": (), "b": ("c",), "c": ("b",)})
    assert set(e.value.cycle) == {"b", "c"}


def test_find_cycle_returns_none_for_dag():
    assert find_cycle({"a": (), "b": ("a",), "c": ("a", "b")}) is None
