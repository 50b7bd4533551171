# kudo

A small engine that drives the plans of operator instances. A plan is made of
phases, a phase is made of steps, and a step is made of named tasks. Each call
to the engine moves a plan forward as far as it can. It follows the serial or
parallel strategy of plans and phases. It treats transient errors, which are
retried on the next call, differently from fatal ones, which stop the plan.

## Install

```
pip install .
```

To run the tests, install the test extra and run `pytest`:

```
pip install ".[test]"
pytest
```

## Modules

- `kudo.template_engine`: `Engine.render(tpl, vals)` renders `{{ ... }}`
  templates. It supports field access, pipelines, function calls and
  `if`/`else`/`range`/`with`. Rendering is strict. A missing map key or a
  parse error raises `TemplateError`. The function map does not include
  `env`, `expandenv`, `base`, `dir`, `clean`, `ext` and `isAbs`.
- `kudo.clog`: verbosity-controlled output.
  - `v(level)` returns a `Verbose` that prints only when the current verbosity
    is at least `level`.
  - `printf` always prints, because it prints at level 0.
  - `errorf` prints at level 2 and returns an `Exception` with the message.
  - `init(out, level)` sets the stream and the level. `None` means standard
    output.
  - `set_verbosity(level)` changes the level alone.
- `kudo.models`: data classes for plans and their state.
  - Definitions: `Plan`, `Phase`, `Step`, `Task` (with `Task.from_dict`) and
    `Parameter`.
  - Statuses: `PlanStatus`, `PhaseStatus` and `StepStatus`.
  - Enums: `ExecutionStatus` (with `is_terminal()`) and `Strategy`.
- `kudo.tasks`: the task engine.
  - `build(task)` turns a `Task` into an `ApplyTask`, a `DeleteTask` or a
    `DummyTask`. An unknown kind raises `FatalExecutionError`.
  - `render`, `kustomize`, `apply` and `delete` are the stages that the tasks
    are made of.
  - `KustomizeEnhancer` takes rendered YAML and applies the conventions. It
    prefixes names with the instance name and sets the instance namespace. It
    adds the common labels and annotations, and workload and service
    selectors. It also adds a controller owner reference when the metadata
    names a resources owner.
  - `Client` is an in-memory object store with `get`, `create`, `patch` (a
    merge patch) and `delete`. It raises `NotFoundError` for missing objects.
  - An `ApplyTask` is done once every applied object is healthy. Health is
    checked only for Jobs (by their successful completions) and for
    Deployments and StatefulSets (by their ready replicas). Any other object
    counts as healthy.
- `kudo.plan_execution`: `execute_plan` and parameter helpers.
  - `execute_plan(plan, metadata, client, enhancer, current_time)` advances an
    `ActivePlan` and returns the new `PlanStatus`.
  - `get_parameters` merges instance parameters with the defaults of the
    operator's parameters. It raises a fatal `ExecutionError` that names every
    required parameter that has no value.
  - `parameter_difference(old, new)` returns the parameters that were removed,
    added or changed.

## Example

```python
from datetime import datetime, timezone

from kudo.clog import init, v
from kudo.models import (
    ExecutionStatus, Phase, PhaseStatus, Plan, PlanStatus, Step, StepStatus, Task,
)
from kudo.plan_execution import ActivePlan, execute_plan
from kudo.tasks import EngineMetadata

init(out=None, level=2)
v(2).printf("plan %s started", "deploy")

plan = ActivePlan(
    name="deploy",
    plan_status=PlanStatus(
        name="deploy",
        status=ExecutionStatus.PENDING,
        phases=[PhaseStatus("main", ExecutionStatus.PENDING,
                            [StepStatus("everything", ExecutionStatus.PENDING)])],
    ),
    spec=Plan(phases=[Phase("main", steps=[Step("everything", ["noop"])])]),
    tasks=[Task(name="noop", kind="Dummy", done=True)],
)
status = execute_plan(plan, EngineMetadata(instance_name="demo"), None, None,
                      datetime.now(timezone.utc))
print(status.status)  # COMPLETE
```

A plan that is already in a terminal status is returned unchanged. A transient
task error marks its step `ERROR` and leaves the plan `IN_PROGRESS`. A fatal
task error raises `ExecutionError`, and its `plan_status` holds the status as
it stood when the error happened. The error also has `fatal` and `event_name`.

## What this package does not do

The package has no controller loop and no command-line tool. It does not
connect to a cluster. `Client` keeps objects in memory. To reach a real API
server, subclass it and override its methods. Nothing in the package watches
resources or records events. The caller has to store the returned plan status
and act on `ExecutionError.event_name`.