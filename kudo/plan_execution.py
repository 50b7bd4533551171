"""Execution of an operator plan: phases, steps and tasks, honouring strategies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Iterable

from kudo.models import (
    ExecutionStatus,
    Parameter,
    PhaseStatus,
    Plan,
    PlanStatus,
    StepStatus,
    Strategy,
    Task,
)
from kudo.tasks import (
    Client,
    Context,
    EngineMetadata,
    ExecutionMetadata,
    FatalExecutionError,
    KubernetesObjectEnhancer,
    build,
)

__all__ = [
    "ExecutionError",
    "ActivePlan",
    "execute_plan",
    "get_parameters",
    "parameter_difference",
    "UNKNOWN_TASK_NAME_EVENT",
    "UNKNOWN_TASK_KIND_EVENT",
    "FATAL_TASK_EXECUTION_ERROR_EVENT",
    "MISSING_PHASE_STATUS_EVENT",
    "MISSING_STEP_STATUS_EVENT",
    "MISSING_PARAMETER_EVENT",
]

log = logging.getLogger(__name__)

UNKNOWN_TASK_NAME_EVENT = "UnknownTaskName"
UNKNOWN_TASK_KIND_EVENT = "UnknownTaskKind"
FATAL_TASK_EXECUTION_ERROR_EVENT = "FatalTaskExecutionError"
MISSING_PHASE_STATUS_EVENT = "MissingPhaseStatus"
MISSING_STEP_STATUS_EVENT = "MissingStepStatus"
MISSING_PARAMETER_EVENT = "Missing parameter"


class ExecutionError(Exception):
    """An error of the plan execution engine.

    ``fatal`` errors must not be retried. ``event_name`` names the warning
    event to publish, or is None when no event should be published.
    ``plan_status`` holds the plan status reached when the error occurred.
    """

    def __init__(
        self,
        err: Any,
        fatal: bool = False,
        event_name: str | None = None,
        plan_status: PlanStatus | None = None,
    ) -> None:
        self.err = err
        self.fatal = fatal
        self.event_name = event_name
        self.plan_status = plan_status
        prefix = "Fatal error" if fatal else "Error during execution"
        super().__init__(f"{prefix}: {err}")


@dataclass
class ActivePlan:
    """The plan currently being executed together with everything it needs."""

    name: str
    plan_status: PlanStatus
    spec: Plan | None = None
    tasks: list[Task] = field(default_factory=list)
    templates: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)

    def task_by_name(self, name: str) -> Task | None:
        """Return the task called ``name``, or None if there is none."""
        return next((t for t in self.tasks if t.name == name), None)


def _is_finished(status: ExecutionStatus) -> bool:
    return status == ExecutionStatus.COMPLETE


def _is_in_progress(status: ExecutionStatus) -> bool:
    return status in (
        ExecutionStatus.IN_PROGRESS,
        ExecutionStatus.PENDING,
        ExecutionStatus.ERROR,
    )


def _find(statuses: Iterable[Any], name: str) -> Any:
    return next((s for s in statuses if s.name == name), None)


def _fatal(
    message: str,
    event_name: str,
    plan_status: PlanStatus,
    *statuses: PhaseStatus | StepStatus,
) -> ExecutionError:
    for status in statuses:
        status.status = ExecutionStatus.FATAL_ERROR
    plan_status.status = ExecutionStatus.FATAL_ERROR
    return ExecutionError(message, fatal=True, event_name=event_name, plan_status=plan_status)


def _execution_metadata(em: EngineMetadata, **extra: str) -> ExecutionMetadata:
    base = {f.name: getattr(em, f.name) for f in fields(EngineMetadata)}
    return ExecutionMetadata(**base, **extra)


def _run_step_tasks(
    plan: ActivePlan,
    phase_name: str,
    step_name: str,
    task_names: list[str],
    em: EngineMetadata,
    client: Client | None,
    enhancer: KubernetesObjectEnhancer | None,
    plan_status: PlanStatus,
    phase_status: PhaseStatus,
    step_status: StepStatus,
) -> int:
    """Run the tasks of one step; return how many are not done yet."""
    tasks_left = len(task_names)
    for task_name in task_names:
        task = plan.task_by_name(task_name)
        if task is None:
            raise _fatal(
                f"failed to find task {task_name} for operator version {em.operator_version_name}",
                UNKNOWN_TASK_NAME_EVENT,
                plan_status,
                phase_status,
                step_status,
            )
        meta = _execution_metadata(
            em,
            plan_name=plan.name,
            phase_name=phase_name,
            step_name=step_name,
            task_name=task_name,
        )
        try:
            runnable = build(task)
        except FatalExecutionError as exc:
            raise _fatal(
                f"failed to resolve task {task_name} for operator version "
                f"{em.operator_version_name}: {exc}",
                UNKNOWN_TASK_KIND_EVENT,
                plan_status,
                phase_status,
                step_status,
            ) from exc

        ctx = Context(
            client=client,
            enhancer=enhancer,
            meta=meta,
            templates=plan.templates,
            parameters=plan.params,
        )
        try:
            done = runnable.run(ctx)
        except FatalExecutionError as exc:
            log.warning(
                "PlanExecution: error during task %s execution for operator version %s: %s",
                task_name, em.operator_version_name, exc,
            )
            raise _fatal(
                f"error during task {task_name} execution for operator version "
                f"{em.operator_version_name}: {exc}",
                FATAL_TASK_EXECUTION_ERROR_EVENT,
                plan_status,
                phase_status,
                step_status,
            ) from exc
        except Exception as exc:  # transient: retried on the next execution
            log.warning(
                "PlanExecution: error during task %s execution for operator version %s: %s",
                task_name, em.operator_version_name, exc,
            )
            step_status.status = ExecutionStatus.ERROR
            continue
        if done:
            tasks_left -= 1
    return tasks_left


def execute_plan(
    plan: ActivePlan,
    metadata: EngineMetadata,
    client: Client | None,
    enhancer: KubernetesObjectEnhancer | None,
    current_time: datetime,
) -> PlanStatus:
    """Advance the execution of ``plan`` and return its new status.

    Phases and steps are walked according to their strategies. Transient task
    errors mark the step as ERROR and leave the plan in progress; a fatal error
    marks the plan, phase and step as FATAL_ERROR and raises ExecutionError
    carrying the new status.
    """
    if plan.plan_status.status.is_terminal():
        log.info(
            "PlanExecution: Plan %s for instance %s is terminal, nothing to do",
            plan.name, metadata.instance_name,
        )
        return plan.plan_status

    plan_status = plan.plan_status.copy()
    plan_status.status = ExecutionStatus.IN_PROGRESS
    spec = plan.spec if plan.spec is not None else Plan()

    phases_left = len(spec.phases)
    for phase in spec.phases:
        phase_status = _find(plan_status.phases, phase.name)
        if phase_status is None:
            raise _fatal(
                f"failed to find phase {phase.name} for operator version {metadata.operator_version_name}",
                MISSING_PHASE_STATUS_EVENT,
                plan_status,
            )
        if _is_finished(phase_status.status):
            phases_left -= 1
            continue
        if not _is_in_progress(phase_status.status):
            break
        phase_status.status = ExecutionStatus.IN_PROGRESS

        steps_left = len(phase.steps)
        for step in phase.steps:
            step_status = _find(phase_status.steps, step.name)
            if step_status is None:
                raise _fatal(
                    f"failed to find step {step.name} for operator version {metadata.operator_version_name}",
                    MISSING_STEP_STATUS_EVENT,
                    plan_status,
                    phase_status,
                )
            if _is_finished(step_status.status):
                steps_left -= 1
                continue
            if not _is_in_progress(step_status.status):
                break
            step_status.status = ExecutionStatus.IN_PROGRESS

            tasks_left = _run_step_tasks(
                plan, phase.name, step.name, step.tasks, metadata, client, enhancer,
                plan_status, phase_status, step_status,
            )
            if tasks_left > 0:
                if phase.strategy == Strategy.SERIAL:
                    log.info(
                        "PlanExecution: some tasks of the %s.%s, operator version %s are not ready",
                        phase.name, step.name, metadata.operator_version_name,
                    )
                    break
            else:
                step_status.status = ExecutionStatus.COMPLETE
                steps_left -= 1

        if steps_left > 0:
            if spec.strategy == Strategy.SERIAL:
                log.info(
                    "PlanExecution: some steps of the %s.%s, operator version %s are not ready",
                    plan_status.name, phase.name, metadata.operator_version_name,
                )
                break
        else:
            phase_status.status = ExecutionStatus.COMPLETE
            phases_left -= 1

    if phases_left == 0:
        log.info(
            "PlanExecution: All phases on plan %s and instance %s are healthy",
            plan.name, metadata.instance_name,
        )
        plan_status.status = ExecutionStatus.COMPLETE
        plan_status.last_finished_run = current_time

    return plan_status


def get_parameters(
    instance_parameters: dict[str, str] | None,
    operator_parameters: Iterable[Parameter],
) -> dict[str, str]:
    """Merge instance parameters with the operator version's defaults.

    Raises a fatal ExecutionError naming every required parameter that has
    neither a value nor a default.
    """
    params = dict(instance_parameters or {})
    missing: list[str] = []
    for param in operator_parameters:
        if param.name in params:
            continue
        if param.required and param.default is None:
            missing.append(param.name)
        else:
            params[param.name] = param.default if param.default is not None else ""
    if missing:
        raise ExecutionError(
            f"parameters are missing when evaluating template: {','.join(missing)}",
            fatal=True,
            event_name=MISSING_PARAMETER_EVENT,
        )
    return params


def parameter_difference(old: dict[str, str], new: dict[str, str]) -> dict[str, str]:
    """Return parameters removed from ``old`` and those added or changed in ``new``."""
    diff = {key: val for key, val in old.items() if key not in new}
    diff.update({key: val for key, val in new.items() if key not in old or old[key] != val})
    return diff