"""Test configuration and fixtures."""

import copy
import itertools
import uuid
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from mcpserver_operator.config import API_GROUP_VERSION, KIND, OperatorSettings
from mcpserver_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OperatorError,
)
from mcpserver_operator.metrics import MetricsSink
from mcpserver_operator.models import ChildKind
from mcpserver_operator.reconciler import MCPServerReconciler

WRITE_OPERATIONS = ("create", "update", "patch_status", "annotate")


class FakeStore:
    """In-memory ClusterStore that behaves like a small API server.

    Records every call, bumps resourceVersion on each write, rejects stale
    updates with ConflictError, adds a few server-side defaults to created
    children and can cascade-delete children owned by a deleted parent.
    """

    def __init__(self) -> None:
        self.parents: dict[tuple[str, str], dict[str, Any]] = {}
        self.children: dict[tuple[ChildKind, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._failures: dict[tuple[str, str], list[OperatorError]] = {}
        self._versions = itertools.count(1)

    # -- helpers used by tests -------------------------------------------------

    def add_parent(
        self,
        name: str,
        namespace: str = "default",
        spec: dict[str, Any] | None = None,
        generation: int = 1,
    ) -> dict[str, Any]:
        parent = {
            "apiVersion": API_GROUP_VERSION,
            "kind": KIND,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": str(uuid.uuid4()),
                "generation": generation,
                "resourceVersion": str(next(self._versions)),
            },
            "spec": spec if spec is not None else {"image": "test-image:v1"},
        }
        self.parents[(namespace, name)] = parent
        return parent

    def update_parent_spec(self, name: str, namespace: str = "default", **changes: Any) -> None:
        parent = self.parents[(namespace, name)]
        parent["spec"].update(changes)
        parent["metadata"]["generation"] += 1
        parent["metadata"]["resourceVersion"] = str(next(self._versions))

    def child(self, kind: ChildKind, name: str, namespace: str = "default") -> dict[str, Any]:
        return self.children[(kind, namespace, name)]

    def put_child(self, kind: ChildKind, obj: dict[str, Any]) -> None:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = str(next(self._versions))
        obj.setdefault("kind", kind.value)
        self.children[(kind, metadata["namespace"], metadata["name"])] = obj

    def set_ready(self, name: str, ready: int, namespace: str = "default") -> None:
        deployment = self.children[(ChildKind.DEPLOYMENT, namespace, name)]
        deployment["status"] = {"readyReplicas": ready, "availableReplicas": ready}
        deployment["metadata"]["resourceVersion"] = str(next(self._versions))

    def delete_child(self, kind: ChildKind, name: str, namespace: str = "default") -> None:
        del self.children[(kind, namespace, name)]

    def delete_parent(self, name: str, namespace: str = "default") -> None:
        """Delete the parent and let the garbage collector cascade to its children."""
        parent = self.parents.pop((namespace, name))
        uid = parent["metadata"]["uid"]
        for key, obj in list(self.children.items()):
            refs = obj.get("metadata", {}).get("ownerReferences") or []
            if any(ref.get("uid") == uid for ref in refs):
                del self.children[key]

    def fail(self, operation: str, kind: str, error: OperatorError, times: int = 1) -> None:
        self._failures.setdefault((operation, kind), []).extend([error] * times)

    def writes(self, kind: str | None = None) -> list[tuple[str, str, str]]:
        return [
            call
            for call in self.calls
            if call[0] in WRITE_OPERATIONS and (kind is None or call[1] == kind)
        ]

    def reset_calls(self) -> None:
        self.calls.clear()

    def _record(self, operation: str, kind: str, resource: str) -> None:
        self.calls.append((operation, kind, resource))
        queued = self._failures.get((operation, kind))
        if queued:
            raise queued.pop(0)

    # -- ClusterStore ------------------------------------------------------------

    def get_parent(self, namespace: str, name: str) -> dict[str, Any]:
        self._record("get", KIND, f"{namespace}/{name}")
        try:
            return copy.deepcopy(self.parents[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"{KIND} '{namespace}/{name}' not found", kind=KIND) from None

    def list_parents(self, namespace: str) -> list[dict[str, Any]]:
        self._record("list", KIND, namespace)
        return [
            copy.deepcopy(parent)
            for (ns, _name), parent in self.parents.items()
            if not namespace or ns == namespace
        ]

    def patch_parent_status(
        self,
        namespace: str,
        name: str,
        status: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        self._record("patch_status", KIND, f"{namespace}/{name}")
        parent = self.parents[(namespace, name)]
        if resource_version and resource_version != parent["metadata"]["resourceVersion"]:
            raise ConflictError(f"{KIND} modified", kind=KIND)
        parent["status"] = copy.deepcopy(status)
        parent["metadata"]["resourceVersion"] = str(next(self._versions))
        return copy.deepcopy(parent)

    def annotate_parent(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> dict[str, Any]:
        self._record("annotate", KIND, f"{namespace}/{name}")
        try:
            parent = self.parents[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"{KIND} '{namespace}/{name}' not found", kind=KIND) from None
        parent["metadata"].setdefault("annotations", {}).update(annotations)
        parent["metadata"]["resourceVersion"] = str(next(self._versions))
        return copy.deepcopy(parent)

    def get(self, kind: ChildKind, namespace: str, name: str) -> dict[str, Any]:
        self._record("get", kind.value, f"{namespace}/{name}")
        try:
            return copy.deepcopy(self.children[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(
                f"{kind.value} '{namespace}/{name}' not found", kind=kind.value
            ) from None

    def create(self, kind: ChildKind, body: dict[str, Any]) -> dict[str, Any]:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._record("create", kind.value, f"{namespace}/{name}")
        if (kind, namespace, name) in self.children:
            raise AlreadyExistsError(f"{kind.value} exists", kind=kind.value)

        obj = copy.deepcopy(body)
        obj["metadata"]["uid"] = str(uuid.uuid4())
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        if kind is ChildKind.DEPLOYMENT:
            obj["spec"].setdefault("revisionHistoryLimit", 10)
            for container in obj["spec"]["template"]["spec"]["containers"]:
                container.setdefault("terminationMessagePath", "/dev/termination-log")
            obj["status"] = {}
        else:
            obj["spec"].setdefault("clusterIP", "10.96.0.10")
            obj["spec"].setdefault("sessionAffinity", "None")
        self.children[(kind, namespace, name)] = obj
        return copy.deepcopy(obj)

    def update(self, kind: ChildKind, body: dict[str, Any]) -> dict[str, Any]:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._record("update", kind.value, f"{namespace}/{name}")
        stored = self.children.get((kind, namespace, name))
        if stored is None:
            raise NotFoundError(f"{kind.value} gone", kind=kind.value)
        if body["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind.value} modified", kind=kind.value)

        obj = copy.deepcopy(body)
        # Status is a subresource; a spec update never changes it
        if "status" in stored:
            obj["status"] = copy.deepcopy(stored["status"])
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.children[(kind, namespace, name)] = obj
        return copy.deepcopy(obj)


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int = 60) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsSink:
    return MetricsSink(registry)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> OperatorSettings:
    return OperatorSettings()


@pytest.fixture
def reconciler(
    store: FakeStore, metrics: MetricsSink, settings: OperatorSettings, clock: FakeClock
) -> Generator[MCPServerReconciler, None, None]:
    yield MCPServerReconciler(store, metrics, settings, clock=clock)
