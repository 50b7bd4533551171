from datetime import datetime

import pytest

from kudo.models import (
    ExecutionStatus,
    Parameter,
    Phase,
    PhaseStatus,
    Plan,
    PlanStatus,
    Step,
    StepStatus,
    Strategy,
    Task,
)
from kudo.plan_execution import (
    ActivePlan,
    ExecutionError,
    execute_plan,
    get_parameters,
    parameter_difference,
)
from kudo.tasks import Client, EngineMetadata, KustomizeEnhancer

NOW = datetime(2020, 1, 2, 3, 4, 5)
S = ExecutionStatus

META = EngineMetadata(
    instance_name="test-instance",
    instance_namespace="default",
    operator_name="first-operator",
    operator_version_name="first-operator-1.0",
    operator_version="1.0",
    resources_owner={
        "apiVersion": "kudo.dev/v1alpha1",
        "kind": "Instance",
        "metadata": {"name": "test-instance", "namespace": "default"},
    },
)


def dummy(name, want_err=False, fatal=False, done=False, kind="Dummy"):
    return Task(name=name, kind=kind, want_err=want_err, fatal=fatal, done=done)


def single_plan(plan_st, phase_st, step_st, task, task_ref="task"):
    return ActivePlan(
        name="test",
        plan_status=PlanStatus(
            name="test", status=plan_st,
            phases=[PhaseStatus("phase", phase_st, [StepStatus("step", step_st)])],
        ),
        spec=Plan(
            strategy=Strategy.SERIAL,
            phases=[Phase("phase", Strategy.SERIAL, [Step("step", [task_ref])])],
        ),
        tasks=[task],
    )


def two_steps(phase_strategy, task_one, task_two):
    return ActivePlan(
        name="test",
        plan_status=PlanStatus(
            name="test", status=S.IN_PROGRESS,
            phases=[PhaseStatus("phase", S.IN_PROGRESS, [
                StepStatus("stepOne", S.IN_PROGRESS), StepStatus("stepTwo", S.IN_PROGRESS),
            ])],
        ),
        spec=Plan(
            strategy=Strategy.SERIAL,
            phases=[Phase("phase", phase_strategy, [
                Step("stepOne", ["taskOne"]), Step("stepTwo", ["taskTwo"]),
            ])],
        ),
        tasks=[task_one, task_two],
    )


def two_phases(plan_strategy, task_one, task_two):
    return ActivePlan(
        name="test",
        plan_status=PlanStatus(
            name="test", status=S.IN_PROGRESS,
            phases=[
                PhaseStatus("phaseOne", S.IN_PROGRESS, [StepStatus("step", S.IN_PROGRESS)]),
                PhaseStatus("phaseTwo", S.IN_PROGRESS, [StepStatus("step", S.IN_PROGRESS)]),
            ],
        ),
        spec=Plan(
            strategy=plan_strategy,
            phases=[
                Phase("phaseOne", Strategy.SERIAL, [Step("step", ["taskOne"])]),
                Phase("phaseTwo", Strategy.SERIAL, [Step("step", ["taskTwo"])]),
            ],
        ),
        tasks=[task_one, task_two],
    )


def run(plan):
    return execute_plan(plan, META, Client(), KustomizeEnhancer(), NOW)


def run_fatal(plan):
    with pytest.raises(ExecutionError) as info:
        run(plan)
    assert info.value.fatal is True
    return info.value


def test_finished_plan_keeps_status():
    plan = ActivePlan(name="test", plan_status=PlanStatus(status=S.COMPLETE))
    assert run(plan) == PlanStatus(status=S.COMPLETE)


def test_step_not_completed_keeps_plan_in_progress():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task", done=False))
    assert run(plan) == PlanStatus(
        name="test", status=S.IN_PROGRESS,
        phases=[PhaseStatus("phase", S.IN_PROGRESS, [StepStatus("step", S.IN_PROGRESS)])],
    )


def test_healthy_step_completes_plan():
    plan = single_plan(S.PENDING, S.PENDING, S.PENDING, dummy("task", done=True))
    assert run(plan) == PlanStatus(
        name="test", status=S.COMPLETE, last_finished_run=NOW,
        phases=[PhaseStatus("phase", S.COMPLETE, [StepStatus("step", S.COMPLETE)])],
    )


def test_errored_step_is_retried_and_completed():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.ERROR, dummy("task", done=True))
    assert run(plan) == PlanStatus(
        name="test", status=S.COMPLETE, last_finished_run=NOW,
        phases=[PhaseStatus("phase", S.COMPLETE, [StepStatus("step", S.COMPLETE)])],
    )


def test_original_status_is_not_modified():
    plan = single_plan(S.PENDING, S.PENDING, S.PENDING, dummy("task", done=True))
    run(plan)
    assert plan.plan_status.status == S.PENDING
    assert plan.plan_status.phases[0].steps[0].status == S.PENDING


def test_failing_task_sets_step_error():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task", want_err=True))
    assert run(plan) == PlanStatus(
        name="test", status=S.IN_PROGRESS,
        phases=[PhaseStatus("phase", S.IN_PROGRESS, [StepStatus("step", S.ERROR)])],
    )


FATAL_SINGLE = PlanStatus(
    name="test", status=S.FATAL_ERROR,
    phases=[PhaseStatus("phase", S.FATAL_ERROR, [StepStatus("step", S.FATAL_ERROR)])],
)


def test_fatal_task_error_propagates():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task", want_err=True, fatal=True))
    err = run_fatal(plan)
    assert err.plan_status == FATAL_SINGLE
    assert err.event_name == "FatalTaskExecutionError"


def test_misconfigured_task_name_is_fatal():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task"), task_ref="fake-task")
    err = run_fatal(plan)
    assert err.plan_status == FATAL_SINGLE
    assert err.event_name == "UnknownTaskName"
    assert "fake-task" in str(err)


def test_unknown_task_kind_is_fatal():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task", kind="Unknown"))
    err = run_fatal(plan)
    assert err.plan_status == FATAL_SINGLE
    assert err.event_name == "UnknownTaskKind"


def test_pending_plan_with_fatal_step():
    plan = single_plan(S.PENDING, S.PENDING, S.PENDING, dummy("task", want_err=True, fatal=True))
    assert run_fatal(plan).plan_status == FATAL_SINGLE


def test_serial_steps_stop_after_first_failure():
    plan = two_steps(Strategy.SERIAL, dummy("taskOne", want_err=True), dummy("taskTwo"))
    assert run(plan) == PlanStatus(
        name="test", status=S.IN_PROGRESS,
        phases=[PhaseStatus("phase", S.IN_PROGRESS, [
            StepStatus("stepOne", S.ERROR), StepStatus("stepTwo", S.IN_PROGRESS),
        ])],
    )


def test_parallel_steps_continue_after_failure():
    plan = two_steps(Strategy.PARALLEL, dummy("taskOne", want_err=True), dummy("taskTwo", done=True))
    assert run(plan) == PlanStatus(
        name="test", status=S.IN_PROGRESS,
        phases=[PhaseStatus("phase", S.IN_PROGRESS, [
            StepStatus("stepOne", S.ERROR), StepStatus("stepTwo", S.COMPLETE),
        ])],
    )


def test_parallel_steps_stop_on_fatal_error():
    plan = two_steps(Strategy.PARALLEL, dummy("taskOne", want_err=True, fatal=True), dummy("taskTwo"))
    assert run_fatal(plan).plan_status == PlanStatus(
        name="test", status=S.FATAL_ERROR,
        phases=[PhaseStatus("phase", S.FATAL_ERROR, [
            StepStatus("stepOne", S.FATAL_ERROR), StepStatus("stepTwo", S.IN_PROGRESS),
        ])],
    )


def test_serial_phases_stop_after_first_failure():
    plan = two_phases(Strategy.SERIAL, dummy("taskOne", want_err=True), dummy("taskTwo"))
    assert run(plan) == PlanStatus(
        name="test", status=S.IN_PROGRESS,
        phases=[
            PhaseStatus("phaseOne", S.IN_PROGRESS, [StepStatus("step", S.ERROR)]),
            PhaseStatus("phaseTwo", S.IN_PROGRESS, [StepStatus("step", S.IN_PROGRESS)]),
        ],
    )


def test_parallel_phases_continue_after_failure():
    plan = two_phases(Strategy.PARALLEL, dummy("taskOne", want_err=True), dummy("taskTwo", done=True))
    assert run(plan) == PlanStatus(
        name="test", status=S.IN_PROGRESS,
        phases=[
            PhaseStatus("phaseOne", S.IN_PROGRESS, [StepStatus("step", S.ERROR)]),
            PhaseStatus("phaseTwo", S.COMPLETE, [StepStatus("step", S.COMPLETE)]),
        ],
    )


def test_parallel_phases_stop_on_fatal_error():
    plan = two_phases(Strategy.PARALLEL, dummy("taskOne", want_err=True, fatal=True), dummy("taskTwo"))
    assert run_fatal(plan).plan_status == PlanStatus(
        name="test", status=S.FATAL_ERROR,
        phases=[
            PhaseStatus("phaseOne", S.FATAL_ERROR, [StepStatus("step", S.FATAL_ERROR)]),
            PhaseStatus("phaseTwo", S.IN_PROGRESS, [StepStatus("step", S.IN_PROGRESS)]),
        ],
    )


def test_missing_phase_status_is_fatal():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task"))
    plan.plan_status.phases = []
    err = run_fatal(plan)
    assert err.event_name == "MissingPhaseStatus"
    assert err.plan_status.status == S.FATAL_ERROR


def test_missing_step_status_is_fatal():
    plan = single_plan(S.IN_PROGRESS, S.IN_PROGRESS, S.IN_PROGRESS, dummy("task"))
    plan.plan_status.phases[0].steps = []
    err = run_fatal(plan)
    assert err.event_name == "MissingStepStatus"
    assert err.plan_status.phases[0].status == S.FATAL_ERROR


def test_task_by_name():
    plan = ActivePlan(name="p", plan_status=PlanStatus(), tasks=[dummy("a"), dummy("b", done=True)])
    assert plan.task_by_name("b") == dummy("b", done=True)
    assert plan.task_by_name("c") is None


def test_execution_error_message():
    assert str(ExecutionError("boom", fatal=True)) == "Fatal error: boom"
    assert str(ExecutionError("boom")) == "Error during execution: boom"


OLD = {"one": "1", "two": "2"}


@pytest.mark.parametrize(
    "new, diff",
    [
        ({"one": "11", "two": "2"}, {"one": "11"}),
        ({"one": "11", "two": "22"}, {"one": "11", "two": "22"}),
        ({"one": "1", "two": "2", "three": "3"}, {"three": "3"}),
        ({"one": "1"}, {"two": "2"}),
        ({"one": "1", "two": "2"}, {}),
        ({}, {"one": "1", "two": "2"}),
    ],
    ids=["update one", "update multiple", "add new", "remove one", "no difference", "empty new"],
)
def test_parameter_difference(new, diff):
    assert parameter_difference(OLD, new) == diff


def test_get_parameters_merges_defaults():
    params = get_parameters(
        {"param": "value"},
        [Parameter("param", default="default"), Parameter("other", default="x"), Parameter("opt")],
    )
    assert params == {"param": "value", "other": "x", "opt": ""}


def test_get_parameters_missing_required():
    with pytest.raises(ExecutionError) as info:
        get_parameters({}, [Parameter("a", required=True), Parameter("b", required=True), Parameter("c", default="1")])
    assert info.value.fatal is True
    assert info.value.event_name == "Missing parameter"
    assert "parameters are missing when evaluating template: a,b" in str(info.value)


def test_get_parameters_required_with_default_is_filled():
    assert get_parameters(None, [Parameter("a", required=True, default="d")]) == {"a": "d"}