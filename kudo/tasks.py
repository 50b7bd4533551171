"""The task engine: building, rendering, enhancing and running operator tasks.

A task is run repeatedly during plan execution and must be idempotent.
``run`` returns True when the task has finished successfully and False when
it is still in progress. A ``FatalExecutionError`` means the task cannot
succeed and must not be retried; any other exception is transient.

To add a task kind, implement a class with a ``run(ctx)`` method and extend
``build`` to create it from a task description.
"""

from __future__ import annotations

import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

import yaml

from kudo.models import Task
from kudo.template_engine import Engine, TemplateError

__all__ = [
    "FatalExecutionError",
    "NotFoundError",
    "EngineMetadata",
    "ExecutionMetadata",
    "Context",
    "Client",
    "KubernetesObjectEnhancer",
    "KustomizeEnhancer",
    "ApplyTask",
    "DeleteTask",
    "DummyTask",
    "build",
    "render",
    "kustomize",
    "apply",
    "delete",
    "APPLY_TASK_KIND",
    "DELETE_TASK_KIND",
    "DUMMY_TASK_KIND",
    "HERITAGE_LABEL",
    "OPERATOR_LABEL",
    "INSTANCE_LABEL",
    "PLAN_ANNOTATION",
    "PHASE_ANNOTATION",
    "STEP_ANNOTATION",
    "OPERATOR_VERSION_ANNOTATION",
]

log = logging.getLogger(__name__)

APPLY_TASK_KIND = "Apply"
DELETE_TASK_KIND = "Delete"
DUMMY_TASK_KIND = "Dummy"

HERITAGE_LABEL = "heritage"
OPERATOR_LABEL = "kudo.dev/operator"
INSTANCE_LABEL = "kudo.dev/instance"
PLAN_ANNOTATION = "kudo.dev/plan"
PHASE_ANNOTATION = "kudo.dev/phase"
STEP_ANNOTATION = "kudo.dev/step"
OPERATOR_VERSION_ANNOTATION = "kudo.dev/operator-version"

_CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "PersistentVolume",
        "StorageClass",
        "Node",
    }
)
_WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet"})


class FatalExecutionError(Exception):
    """A task error that must not be retried."""


class NotFoundError(LookupError):
    """Raised by a client when the requested object does not exist."""


@dataclass
class EngineMetadata:
    """Metadata of the operator instance being executed."""

    instance_name: str = ""
    instance_namespace: str = ""
    operator_name: str = ""
    operator_version_name: str = ""
    operator_version: str = ""
    # the object that owns every resource created by this execution
    resources_owner: dict[str, Any] | None = None


@dataclass
class ExecutionMetadata(EngineMetadata):
    """Engine metadata plus the plan, phase, step and task being executed."""

    plan_name: str = ""
    phase_name: str = ""
    step_name: str = ""
    task_name: str = ""


# ---------------------------------------------------------------- objects

def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.setdefault("metadata", {}) if isinstance(obj.get("metadata"), dict) or "metadata" not in obj else obj["metadata"]


def _object_key(obj: dict[str, Any]) -> dict[str, str]:
    meta = obj.get("metadata") or {}
    return {"Namespace": meta.get("namespace", "") or "", "Name": meta.get("name", "") or ""}


def _pretty(obj: dict[str, Any]) -> str:
    return json.dumps(_object_key(obj), indent=2)


def _merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class Client:
    """In-memory object store offering the client operations tasks need.

    Objects are plain dictionaries in the usual ``apiVersion``/``kind``/
    ``metadata`` shape. Subclass and override the methods to reach a cluster.
    """

    def __init__(self, *objects: dict[str, Any]) -> None:
        self._store: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        for obj in objects:
            self.create(obj)

    @staticmethod
    def _key(obj: dict[str, Any]) -> tuple[str, str, str, str]:
        ns_name = _object_key(obj)
        return (obj.get("apiVersion", ""), obj.get("kind", ""), ns_name["Namespace"], ns_name["Name"])

    def get(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Return the stored state of the object identified by ``obj``."""
        try:
            return copy.deepcopy(self._store[self._key(obj)])
        except KeyError:
            raise NotFoundError(f"{obj.get('kind', '')} {_pretty(obj)} not found") from None

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._key(obj)
        if key in self._store:
            raise ValueError(f"{obj.get('kind', '')} {_pretty(obj)} already exists")
        self._store[key] = copy.deepcopy(obj)
        return copy.deepcopy(obj)

    def patch(self, obj: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
        """Merge-patch the stored object and return its new state."""
        key = self._key(obj)
        if key not in self._store:
            raise NotFoundError(f"{obj.get('kind', '')} {_pretty(obj)} not found")
        _merge_patch(self._store[key], patch)
        return copy.deepcopy(self._store[key])

    def delete(self, obj: dict[str, Any], propagation_policy: str = "Foreground") -> None:
        try:
            del self._store[self._key(obj)]
        except KeyError:
            raise NotFoundError(f"{obj.get('kind', '')} {_pretty(obj)} not found") from None


@dataclass
class Context:
    """Everything a task needs to run."""

    client: Client | None = None
    enhancer: "KubernetesObjectEnhancer | None" = None
    meta: ExecutionMetadata = field(default_factory=ExecutionMetadata)
    templates: dict[str, str] = field(default_factory=dict)
    parameters: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------- enhancing

class KubernetesObjectEnhancer(ABC):
    """Turns rendered templates into objects carrying the naming, label and ownership conventions."""

    @abstractmethod
    def apply_conventions_to_templates(
        self, templates: dict[str, str], metadata: ExecutionMetadata
    ) -> list[dict[str, Any]]:
        """Return the objects described by ``templates`` with conventions applied."""


class KustomizeEnhancer(KubernetesObjectEnhancer):
    """Applies name prefix, namespace, common labels and annotations, and owner references."""

    def apply_conventions_to_templates(
        self, templates: dict[str, str], metadata: ExecutionMetadata
    ) -> list[dict[str, Any]]:
        labels = {
            HERITAGE_LABEL: "kudo",
            OPERATOR_LABEL: metadata.operator_name,
            INSTANCE_LABEL: metadata.instance_name,
        }
        annotations = {
            PLAN_ANNOTATION: metadata.plan_name,
            PHASE_ANNOTATION: metadata.phase_name,
            STEP_ANNOTATION: metadata.step_name,
            OPERATOR_VERSION_ANNOTATION: metadata.operator_version,
        }
        objects: list[dict[str, Any]] = []
        for name, text in templates.items():
            try:
                docs = [d for d in yaml.safe_load_all(text) if d is not None]
            except yaml.YAMLError as exc:
                raise ValueError(f"error parsing kubernetes objects in {name}: {exc}") from exc
            for doc in docs:
                if not isinstance(doc, dict) or "kind" not in doc:
                    raise ValueError(f"template {name} does not describe a kubernetes object")
                objects.append(self._enhance(doc, metadata, labels, annotations))
        return objects

    @staticmethod
    def _enhance(
        obj: dict[str, Any],
        metadata: ExecutionMetadata,
        labels: dict[str, str],
        annotations: dict[str, str],
    ) -> dict[str, Any]:
        obj = copy.deepcopy(obj)
        meta = obj.get("metadata")
        if not isinstance(meta, dict):
            meta = obj["metadata"] = {}
        meta["name"] = f"{metadata.instance_name}-{meta.get('name', '')}"
        kind = obj.get("kind", "")
        if kind not in _CLUSTER_SCOPED_KINDS:
            meta["namespace"] = metadata.instance_namespace
        meta["labels"] = {**(meta.get("labels") or {}), **labels}
        meta["annotations"] = {**(meta.get("annotations") or {}), **annotations}

        spec = obj.get("spec")
        if isinstance(spec, dict):
            if kind in _WORKLOAD_KINDS:
                selector = spec.setdefault("selector", {})
                selector["matchLabels"] = {**(selector.get("matchLabels") or {}), **labels}
                template_meta = spec.setdefault("template", {}).setdefault("metadata", {})
                template_meta["labels"] = {**(template_meta.get("labels") or {}), **labels}
            elif kind == "Service":
                spec["selector"] = {**(spec.get("selector") or {}), **labels}

        owner = metadata.resources_owner
        if owner is not None:
            _set_controller_reference(owner, obj)
        return obj


def _set_controller_reference(owner: dict[str, Any], obj: dict[str, Any]) -> None:
    owner_meta = owner.get("metadata") or {}
    reference = {
        "apiVersion": owner.get("apiVersion", ""),
        "kind": owner.get("kind", ""),
        "name": owner_meta.get("name", ""),
        "uid": owner_meta.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }
    meta = obj["metadata"]
    refs = [dict(r) for r in meta.get("ownerReferences") or []]
    for ref in refs:
        if ref.get("controller") and (ref.get("kind"), ref.get("name")) != (reference["kind"], reference["name"]):
            raise ValueError(
                f"object {_pretty(obj)} is already owned by another {ref.get('kind')} controller {ref.get('name')}"
            )
    refs = [r for r in refs if (r.get("kind"), r.get("name")) != (reference["kind"], reference["name"])]
    refs.append(reference)
    meta["ownerReferences"] = refs


# ---------------------------------------------------------------- steps

def render(
    resource_names: Iterable[str],
    templates: dict[str, str],
    params: dict[str, str],
    meta: ExecutionMetadata,
) -> dict[str, str]:
    """Render the named templates with instance parameters and metadata."""
    configs = {
        "OperatorName": meta.operator_name,
        "Name": meta.instance_name,
        "Namespace": meta.instance_namespace,
        "Params": params,
        "PlanName": meta.plan_name,
        "PhaseName": meta.phase_name,
        "StepName": meta.step_name,
    }
    engine = Engine()
    resources: dict[str, str] = {}
    for name in resource_names:
        if name not in (templates or {}):
            raise LookupError(
                f"error finding resource named {name} for operator version {meta.operator_version_name}"
            )
        try:
            resources[name] = engine.render(templates[name], configs)
        except TemplateError as exc:
            raise TemplateError(f"error expanding template: {exc}") from exc
    return resources


def kustomize(
    rendered: dict[str, str], meta: ExecutionMetadata, enhancer: KubernetesObjectEnhancer
) -> list[dict[str, Any]]:
    """Apply conventions to rendered templates and return the resulting objects."""
    return enhancer.apply_conventions_to_templates(rendered, meta)


def apply(objects: Iterable[dict[str, Any]], client: Client) -> list[dict[str, Any]]:
    """Create missing objects and patch existing ones; return their resulting state."""
    applied = []
    for obj in objects:
        try:
            client.get(obj)
        except NotFoundError:
            applied.append(client.create(obj))
            continue
        try:
            applied.append(client.patch(obj, obj))
        except Exception as exc:
            raise RuntimeError(f"failed to apply merge patch to object {_pretty(obj)}: {exc}") from exc
    return applied


def delete(objects: Iterable[dict[str, Any]], client: Client) -> None:
    """Delete the objects with foreground propagation; missing ones are ignored."""
    for obj in objects:
        try:
            client.delete(obj, propagation_policy="Foreground")
        except NotFoundError:
            pass


def _unhealthy_reason(obj: dict[str, Any]) -> str | None:
    kind = obj.get("kind")
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if kind == "Job":
        wanted = spec.get("completions") or 1
        succeeded = status.get("succeeded") or 0
        if succeeded < wanted:
            return f"job has {succeeded} of {wanted} successful completions"
    elif kind in ("Deployment", "StatefulSet"):
        wanted = spec.get("replicas", 1)
        ready = status.get("readyReplicas") or 0
        if ready < wanted:
            return f"{ready} of {wanted} replicas are ready"
    return None


def _check_health(objects: Iterable[dict[str, Any]]) -> None:
    for obj in objects:
        reason = _unhealthy_reason(obj)
        if reason is not None:
            raise RuntimeError(f"object {_pretty(obj)} is NOT healthy: {reason}")


def _prepare(resources: list[str], ctx: Context) -> list[dict[str, Any]]:
    try:
        rendered = render(resources, ctx.templates, ctx.parameters, ctx.meta)
    except (LookupError, TemplateError) as exc:
        raise FatalExecutionError(f"failed to render task resources: {exc}") from exc
    try:
        return kustomize(rendered, ctx.meta, ctx.enhancer)
    except Exception as exc:
        raise FatalExecutionError(f"failed to kustomize task resources: {exc}") from exc


# ---------------------------------------------------------------- tasks

@dataclass
class ApplyTask:
    """Applies a set of resources to the cluster and waits for them to be healthy."""

    name: str
    resources: list[str] = field(default_factory=list)

    def run(self, ctx: Context) -> bool:
        objects = _prepare(self.resources, ctx)
        applied = apply(objects, ctx.client)
        try:
            _check_health(applied)
        except RuntimeError as exc:
            log.info("TaskExecution: %s", exc)
            return False
        return True


@dataclass
class DeleteTask:
    """Deletes a set of resources from the cluster."""

    name: str
    resources: list[str] = field(default_factory=list)

    def run(self, ctx: Context) -> bool:
        objects = _prepare(self.resources, ctx)
        delete(objects, ctx.client)
        return True


@dataclass
class DummyTask:
    """A task that fails or succeeds on demand, without side effects."""

    name: str = ""
    want_err: bool = False
    fatal: bool = False
    done: bool = False

    def run(self, ctx: Context) -> bool:
        if self.want_err:
            if self.fatal:
                raise FatalExecutionError("fatal dummy error")
            raise RuntimeError("dummy error")
        return self.done


def build(task: Task) -> ApplyTask | DeleteTask | DummyTask:
    """Create the runnable task for a task description."""
    if task.kind == APPLY_TASK_KIND:
        return ApplyTask(name=task.name, resources=list(task.resources))
    if task.kind == DELETE_TASK_KIND:
        return DeleteTask(name=task.name, resources=list(task.resources))
    if task.kind == DUMMY_TASK_KIND:
        return DummyTask(name=task.name, want_err=task.want_err, fatal=task.fatal, done=task.done)
    raise FatalExecutionError(f"unknown task kind {task.kind}")