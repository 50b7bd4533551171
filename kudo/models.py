"""Plan, phase, step and task descriptions and their execution status."""

from __future__ import annotations

import copy as _copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

__all__ = [
    "ExecutionStatus",
    "Strategy",
    "StepStatus",
    "PhaseStatus",
    "PlanStatus",
    "Step",
    "Phase",
    "Plan",
    "Task",
    "Parameter",
]


class ExecutionStatus(str, Enum):
    """Status of a plan, phase or step."""

    NEVER_RUN = "NEVER_RUN"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    FATAL_ERROR = "FATAL_ERROR"

    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETE, ExecutionStatus.FATAL_ERROR)

    def __str__(self) -> str:
        return self.value


class Strategy(str, Enum):
    """How the children of a plan or phase are executed."""

    SERIAL = "serial"
    PARALLEL = "parallel"


@dataclass
class StepStatus:
    name: str
    status: ExecutionStatus = ExecutionStatus.NEVER_RUN


@dataclass
class PhaseStatus:
    name: str
    status: ExecutionStatus = ExecutionStatus.NEVER_RUN
    steps: list[StepStatus] = field(default_factory=list)


@dataclass
class PlanStatus:
    name: str = ""
    status: ExecutionStatus = ExecutionStatus.NEVER_RUN
    phases: list[PhaseStatus] = field(default_factory=list)
    last_finished_run: datetime | None = None

    def copy(self) -> "PlanStatus":
        """Return a deep, independent copy."""
        return _copy.deepcopy(self)


@dataclass
class Step:
    name: str
    tasks: list[str] = field(default_factory=list)


@dataclass
class Phase:
    name: str
    strategy: Strategy = Strategy.SERIAL
    steps: list[Step] = field(default_factory=list)


@dataclass
class Plan:
    strategy: Strategy = Strategy.SERIAL
    phases: list[Phase] = field(default_factory=list)


@dataclass
class Task:
    """A named task of a given kind with its kind-specific settings."""

    name: str
    kind: str
    resources: list[str] = field(default_factory=list)
    want_err: bool = False
    fatal: bool = False
    done: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        spec = data.get("spec") or {}
        return cls(
            name=data.get("name", ""),
            kind=data.get("kind", ""),
            resources=list(spec.get("resources") or []),
            want_err=bool(spec.get("wantErr", False)),
            fatal=bool(spec.get("fatal", False)),
            done=bool(spec.get("done", False)),
        )


@dataclass
class Parameter:
    name: str
    default: str | None = None
    required: bool = False
    description: str = ""