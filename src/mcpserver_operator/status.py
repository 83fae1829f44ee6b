"""
Status projection for MCPServer resources

Phase and conditions are derived purely from the parent and the observed
Deployment; the reconcile loop decides whether the result is worth writing.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from mcpserver_operator.exceptions import OperatorError
from mcpserver_operator.models import Condition, MCPServerStatus, Phase

logger = logging.getLogger(__name__)

CONDITION_AVAILABLE = "Available"
CONDITION_RECONCILED = "Reconciled"

PhaseRule = Callable[[int | None, int | None], Phase]

# (condition status, reason) published on the Available condition for each phase
_AVAILABILITY: dict[Phase, tuple[str, str]] = {
    Phase.RUNNING: ("True", "MinimumReplicasAvailable"),
    Phase.PENDING: ("False", "WorkloadPending"),
    Phase.DEGRADED: ("False", "ReplicasUnavailable"),
    Phase.UNKNOWN: ("Unknown", "PhaseUnknown"),
}


def derive_phase(ready_replicas: int | None, desired_replicas: int | None) -> Phase:
    """
    Map observed ready replicas onto a phase; first matching rule wins.

    ``ready_replicas`` is None when the Deployment has not been observed.
    """
    if ready_replicas is None:
        return Phase.PENDING
    if desired_replicas is None:
        return Phase.UNKNOWN
    if desired_replicas > 0 and ready_replicas == desired_replicas:
        return Phase.RUNNING
    if 0 < ready_replicas < desired_replicas:
        return Phase.DEGRADED
    if ready_replicas == 0 and desired_replicas > 0:
        return Phase.PENDING
    return Phase.UNKNOWN


def format_time(now: datetime) -> str:
    return now.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_status(raw: dict[str, Any] | None) -> MCPServerStatus:
    """Read the stored status, starting over when it is unreadable."""
    try:
        return MCPServerStatus.model_validate(raw or {})
    except ValidationError as e:
        logger.warning("Ignoring malformed stored status: %s", e)
        return MCPServerStatus()


def set_condition(
    conditions: list[Condition],
    type_: str,
    status: str,
    reason: str,
    message: str,
    now: datetime,
) -> list[Condition]:
    """
    Upsert a condition keyed by ``type_``.

    Nothing changes unless ``status`` or ``reason`` differ from the stored
    condition, and ``lastTransitionTime`` only moves when ``status`` does.
    """
    existing = next((c for c in conditions if c.type == type_), None)
    if existing is not None and existing.status == status and existing.reason == reason:
        return conditions

    if existing is None or existing.status != status:
        transition_time = format_time(now)
    else:
        transition_time = existing.last_transition_time

    updated = Condition(
        type=type_,
        status=status,  # type: ignore[arg-type]
        reason=reason,
        message=message,
        lastTransitionTime=transition_time,
    )
    if existing is None:
        return [*conditions, updated]
    return [updated if c.type == type_ else c for c in conditions]


def _desired_replicas(parent: dict[str, Any]) -> int | None:
    replicas = (parent.get("spec") or {}).get("replicas", 1)
    if isinstance(replicas, bool) or not isinstance(replicas, int):
        return None
    return replicas


def _reconciled_condition(error: OperatorError | None) -> tuple[str, str, str]:
    if error is None:
        return "True", "ChildrenConverged", "Deployment and Service match the MCPServer spec"
    return "False", error.reason, error.message


def project(
    parent: dict[str, Any],
    workload: dict[str, Any] | None,
    now: datetime,
    error: OperatorError | None = None,
    phase_rule: PhaseRule = derive_phase,
) -> MCPServerStatus:
    """Compute the full status of ``parent`` from its observed Deployment."""
    stored = parse_status(parent.get("status"))
    desired = _desired_replicas(parent)

    if workload is None:
        ready: int | None = None
        available = 0
    else:
        workload_status = workload.get("status") or {}
        ready = workload_status.get("readyReplicas") or 0
        available = workload_status.get("availableReplicas") or 0

    phase = phase_rule(ready, desired)
    condition_status, reason = _AVAILABILITY[phase]
    if ready is None:
        message = "Deployment has not been observed yet"
    else:
        message = f"{ready}/{desired if desired is not None else '?'} replicas ready"

    conditions = set_condition(
        stored.conditions, CONDITION_AVAILABLE, condition_status, reason, message, now
    )
    conditions = set_condition(conditions, CONDITION_RECONCILED, *_reconciled_condition(error), now)

    return MCPServerStatus(
        availableReplicas=available,
        phase=phase.value,
        conditions=conditions,
        observedGeneration=parent.get("metadata", {}).get("generation", stored.observed_generation),
    )


def project_error(parent: dict[str, Any], error: OperatorError, now: datetime) -> MCPServerStatus:
    """Record a failed pass while keeping the last observed phase and availability."""
    stored = parse_status(parent.get("status"))
    conditions = set_condition(
        stored.conditions, CONDITION_RECONCILED, *_reconciled_condition(error), now
    )
    return stored.model_copy(update={"conditions": conditions})


def status_changed(stored: dict[str, Any] | None, computed: MCPServerStatus) -> bool:
    """True when writing ``computed`` would change what is stored."""
    return (stored or {}) != computed.to_dict()
