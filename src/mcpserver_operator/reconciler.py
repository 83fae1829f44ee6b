"""
Reconcile loop for MCPServer resources

One call to ``MCPServerReconciler.reconcile`` is one level-triggered attempt:
re-read the parent, render its children, converge them, then publish status.
Running it again on a converged parent issues no writes at all.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from mcpserver_operator import builder, convergence
from mcpserver_operator.config import KIND, OperatorSettings
from mcpserver_operator.exceptions import (
    ConflictError,
    NotFoundError,
    OperatorError,
    OwnershipCollisionError,
    ReconcileCancelled,
    SpecValidationError,
)
from mcpserver_operator.metrics import MetricsSink
from mcpserver_operator.models import ChildKind, MCPServerStatus
from mcpserver_operator.ownership import OwnerRef
from mcpserver_operator.status import (
    PhaseRule,
    derive_phase,
    project,
    project_error,
    status_changed,
)
from mcpserver_operator.store import ClusterStore

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    FETCHING = "Fetching"
    BUILDING = "Building"
    CONVERGING_WORKLOAD = "ConvergingWorkload"
    CONVERGING_ENDPOINT = "ConvergingEndpoint"
    PROJECTING = "Projecting"
    DONE = "Done"
    ABSENT = "Absent"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class ReconcileResult:
    """What the caller should do after an attempt"""

    state: ReconcileState
    requeue: bool = False
    requeue_after: float | None = None
    error: OperatorError | None = None
    failed_in: ReconcileState | None = None

    @property
    def message(self) -> str:
        if self.error is None:
            return self.state.value
        where = self.failed_in.value if self.failed_in else self.state.value
        return f"{self.error.reason} in {where}: {self.error.message}"


class _CancellableStore:
    """Store proxy that refuses new calls once the cancel event is set"""

    def __init__(self, store: ClusterStore, cancel: threading.Event | None) -> None:
        self._store = store
        self._cancel = cancel

    def __getattr__(self, name: str) -> Any:
        target = getattr(self._store, name)
        if not callable(target):
            return target

        def call(*args: Any, **kwargs: Any) -> Any:
            if self._cancel is not None and self._cancel.is_set():
                raise ReconcileCancelled(f"Reconcile cancelled before {name}")
            return target(*args, **kwargs)

        return call


class MCPServerReconciler:
    """Converges the children and status of MCPServer resources"""

    def __init__(
        self,
        store: ClusterStore,
        metrics: MetricsSink,
        settings: OperatorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        phase_rule: PhaseRule = derive_phase,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.settings = settings or OperatorSettings()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.phase_rule = phase_rule

    def reconcile(
        self, namespace: str, name: str, cancel: threading.Event | None = None
    ) -> ReconcileResult:
        """Run one reconciliation attempt for the MCPServer ``namespace/name``."""
        started = time.monotonic()
        store = _CancellableStore(self.store, cancel)

        result = self._reconcile(store, namespace, name)

        self.metrics.observe_reconcile(
            namespace, result.state.value.lower(), time.monotonic() - started
        )
        if result.state is ReconcileState.ABSENT:
            self.metrics.forget(namespace, name)
        return result

    def seed_inventory(self, namespace: str = "") -> None:
        """Load the inventory gauges from a listing; empty ``namespace`` means all."""
        try:
            self.metrics.record_inventory(self.store.list_parents(namespace))
        except OperatorError as e:
            logger.warning("Could not list %s resources for metrics: %s", KIND, e.message)

    def _reconcile(self, store: Any, namespace: str, name: str) -> ReconcileResult:
        state = ReconcileState.FETCHING
        parent: dict[str, Any] | None = None
        workload: dict[str, Any] | None = None

        try:
            try:
                parent = store.get_parent(namespace, name)
            except NotFoundError:
                logger.info("%s %s/%s no longer exists, nothing to do", KIND, namespace, name)
                return ReconcileResult(ReconcileState.ABSENT)

            if parent.get("metadata", {}).get("deletionTimestamp"):
                logger.info(
                    "%s %s/%s is being deleted, leaving children to garbage collection",
                    KIND,
                    namespace,
                    name,
                )
                return ReconcileResult(ReconcileState.ABSENT)

            state = ReconcileState.BUILDING
            owner = OwnerRef.from_parent(parent)
            spec = builder.parse_spec(parent.get("spec"), name)
            deployment, service = builder.build(name, namespace, spec, self.settings)

            state = ReconcileState.CONVERGING_WORKLOAD
            workload_result = convergence.converge_child(
                store,
                ChildKind.DEPLOYMENT,
                builder.to_manifest(deployment),
                owner,
                self.settings.max_conflict_retries,
            )
            workload = workload_result.obj
            logger.info("Deployment %s/%s %s", namespace, name, workload_result.action.value)

            state = ReconcileState.CONVERGING_ENDPOINT
            endpoint_result = convergence.converge_child(
                store,
                ChildKind.SERVICE,
                builder.to_manifest(service),
                owner,
                self.settings.max_conflict_retries,
            )
            logger.info("Service %s/%s %s", namespace, name, endpoint_result.action.value)

            state = ReconcileState.PROJECTING
            self._publish_status(store, namespace, name, parent, workload)

        except ReconcileCancelled as e:
            logger.info("Reconcile of %s %s/%s cancelled in %s", KIND, namespace, name, state.value)
            return ReconcileResult(ReconcileState.CANCELLED, requeue=True, error=e, failed_in=state)

        except OperatorError as e:
            return self._fail(store, namespace, name, state, parent, workload, e)

        return ReconcileResult(ReconcileState.DONE)

    def _fail(
        self,
        store: Any,
        namespace: str,
        name: str,
        state: ReconcileState,
        parent: dict[str, Any] | None,
        workload: dict[str, Any] | None,
        error: OperatorError,
    ) -> ReconcileResult:
        logger.warning(
            "Reconcile of %s %s/%s failed in %s: %s",
            KIND,
            namespace,
            name,
            state.value,
            error.message,
        )

        if state in (ReconcileState.CONVERGING_WORKLOAD, ReconcileState.CONVERGING_ENDPOINT):
            kind = (
                ChildKind.DEPLOYMENT
                if state is ReconcileState.CONVERGING_WORKLOAD
                else ChildKind.SERVICE
            )
            error.kind = error.kind or kind.value
            self.metrics.child_error(namespace, name, kind.value)

        # Surface the failure on the parent; children already converged stay as they are
        if parent is not None and state is not ReconcileState.PROJECTING:
            if state is ReconcileState.CONVERGING_ENDPOINT:
                computed = project(
                    parent, workload, self.clock(), error=error, phase_rule=self.phase_rule
                )
            else:
                computed = project_error(parent, error, self.clock())
            try:
                self._write_status(store, namespace, name, parent, computed)
            except OperatorError as status_error:
                logger.warning(
                    "Could not record failure on %s %s/%s: %s",
                    KIND,
                    namespace,
                    name,
                    status_error.message,
                )
            self.metrics.record_phase(namespace, name, computed.phase)

        requeue_after = None
        if isinstance(error, (SpecValidationError, OwnershipCollisionError)):
            requeue_after = self.settings.error_backoff

        return ReconcileResult(
            ReconcileState.FAILED,
            requeue=True,
            requeue_after=requeue_after,
            error=error,
            failed_in=state,
        )

    def _publish_status(
        self,
        store: Any,
        namespace: str,
        name: str,
        parent: dict[str, Any],
        workload: dict[str, Any] | None,
    ) -> None:
        """
        Project and write status, guarded by the parent's resourceVersion.

        A concurrent writer makes the guarded patch fail; the parent and the
        Deployment are then re-read and the status projected again, so a pass
        holding an older Deployment never overwrites a newer status.
        """
        attempts = max(1, self.settings.max_conflict_retries)
        for attempt in range(1, attempts + 1):
            computed = project(parent, workload, self.clock(), phase_rule=self.phase_rule)
            try:
                self._write_status(store, namespace, name, parent, computed)
            except ConflictError:
                if attempt == attempts:
                    raise
                logger.info(
                    "Status of %s %s/%s changed before write (attempt %d/%d), re-reading",
                    KIND,
                    namespace,
                    name,
                    attempt,
                    attempts,
                )
                parent = store.get_parent(namespace, name)
                try:
                    workload = store.get(ChildKind.DEPLOYMENT, namespace, name)
                except NotFoundError:
                    workload = None
                continue

            self.metrics.record_phase(namespace, name, computed.phase)
            return

    def _write_status(
        self,
        store: Any,
        namespace: str,
        name: str,
        parent: dict[str, Any],
        computed: MCPServerStatus,
    ) -> None:
        if not status_changed(parent.get("status"), computed):
            logger.debug("Status of %s %s/%s unchanged", KIND, namespace, name)
            return
        store.patch_parent_status(
            namespace,
            name,
            computed.to_dict(),
            resource_version=parent.get("metadata", {}).get("resourceVersion"),
        )
