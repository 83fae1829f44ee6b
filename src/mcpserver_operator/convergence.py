"""
Convergence of a single child resource toward its rendered desired state

Only the fields the builder renders are ever compared or written. Anything the
API server or other controllers add to a child (defaults, annotations, extra
containers) is left exactly as found.
"""

import copy
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from kubernetes.utils import parse_quantity

from mcpserver_operator.config import LABEL_APP, LABEL_MANAGED_BY, LABEL_OWNER_UID
from mcpserver_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OperatorError,
)
from mcpserver_operator.models import ChildKind
from mcpserver_operator.ownership import OwnerRef, check_owner, owner_references, stamp
from mcpserver_operator.store import ClusterStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByName:
    """Path segment selecting the list item whose ``name`` matches"""

    name: str


PathSegment = str | ByName
Path = tuple[PathSegment, ...]

OWNER_REFERENCES_PATH: Path = ("metadata", "ownerReferences")

_LABEL_PATHS: list[Path] = [
    ("metadata", "labels", LABEL_APP),
    ("metadata", "labels", LABEL_MANAGED_BY),
    ("metadata", "labels", LABEL_OWNER_UID),
]


def tracked_paths(kind: ChildKind, desired: dict[str, Any]) -> list[Path]:
    """Field paths the builder owns for a child of ``kind``."""
    if kind is ChildKind.SERVICE:
        return [
            *_LABEL_PATHS,
            ("spec", "type"),
            ("spec", "internalTrafficPolicy"),
            ("spec", "selector"),
            ("spec", "ports"),
        ]

    container_name = desired["spec"]["template"]["spec"]["containers"][0]["name"]
    container: Path = ("spec", "template", "spec", "containers", ByName(container_name))
    return [
        *_LABEL_PATHS,
        ("spec", "replicas"),
        ("spec", "selector", "matchLabels"),
        ("spec", "template", "metadata", "labels", LABEL_APP),
        (*container, "image"),
        (*container, "imagePullPolicy"),
        (*container, "ports"),
        (*container, "env"),
        (*container, "resources"),
    ]


@dataclass(frozen=True)
class FieldChange:
    path: Path
    value: Any

    def describe(self) -> str:
        return ".".join(
            f"[{segment.name}]" if isinstance(segment, ByName) else segment
            for segment in self.path
        )


@dataclass(frozen=True)
class Mutation:
    """The set of field writes that brings an existing child to its desired state"""

    kind: ChildKind
    namespace: str
    name: str
    changes: tuple[FieldChange, ...] = field(default_factory=tuple)

    def describe(self) -> list[str]:
        return [change.describe() for change in self.changes]


class Action(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ChildResult:
    kind: ChildKind
    action: Action
    obj: dict[str, Any]


def get_path(obj: Any, path: Path) -> Any:
    current = obj
    for segment in path:
        if isinstance(segment, ByName):
            if not isinstance(current, list):
                return None
            current = next(
                (
                    item
                    for item in current
                    if isinstance(item, dict) and item.get("name") == segment.name
                ),
                None,
            )
        elif isinstance(current, dict):
            current = current.get(segment)
        else:
            return None
        if current is None:
            return None
    return current


def set_path(obj: dict[str, Any], path: Path, value: Any) -> None:
    """Write ``value`` at ``path``, creating parents; an empty value removes the field."""
    current: Any = obj
    for index, segment in enumerate(path[:-1]):
        following = path[index + 1]
        if isinstance(segment, ByName):
            item = next(
                (item for item in current if item.get("name") == segment.name),
                None,
            )
            if item is None:
                item = {"name": segment.name}
                current.append(item)
            current = item
        else:
            default: Any = [] if isinstance(following, ByName) else {}
            if current.get(segment) is None:
                current[segment] = default
            current = current[segment]

    last = path[-1]
    if isinstance(last, ByName):
        raise ValueError(f"Path must end in a field name, got {last!r}")
    if _is_empty(value):
        current.pop(last, None)
    else:
        current[last] = copy.deepcopy(value)


def _is_empty(value: Any) -> bool:
    return value is None or value == {} or value == []


def _quantity(value: Any) -> Decimal | str:
    try:
        return Decimal(parse_quantity(value))
    except (ValueError, TypeError):
        return str(value)


def _same_quantities(current: dict[str, Any] | None, desired: dict[str, Any] | None) -> bool:
    current = current or {}
    desired = desired or {}
    if current.keys() != desired.keys():
        return False
    return all(_quantity(current[key]) == _quantity(desired[key]) for key in desired)


def _same_resources(current: Any, desired: Any) -> bool:
    current = current or {}
    desired = desired or {}
    limits = desired.get("limits")
    requests = desired.get("requests")
    # The API server defaults missing requests to the limits
    if not requests and limits and _same_quantities(current.get("requests"), limits):
        requests = current.get("requests")
    return _same_quantities(current.get("limits"), limits) and _same_quantities(
        current.get("requests"), requests
    )


def values_equal(path: Path, current: Any, desired: Any) -> bool:
    if _is_empty(current) and _is_empty(desired):
        return True
    if path[-1] == "resources":
        return _same_resources(current, desired)
    return bool(current == desired)


def plan_mutation(
    kind: ChildKind, existing: dict[str, Any], desired: dict[str, Any], owner: OwnerRef
) -> Mutation | None:
    """
    Compare the tracked fields of ``existing`` against ``desired``.

    Returns None when the child is already converged, otherwise the Mutation
    listing every tracked field that differs. The owner reference is always
    part of the comparison so a stripped reference gets restored.
    """
    stamped = stamp(desired, owner)
    changes = []
    for path in tracked_paths(kind, stamped):
        want = get_path(stamped, path)
        have = get_path(existing, path)
        if not values_equal(path, have, want):
            changes.append(FieldChange(path, want))

    existing_refs = existing.get("metadata", {}).get("ownerReferences") or []
    if owner.to_dict() not in existing_refs:
        changes.append(FieldChange(OWNER_REFERENCES_PATH, owner_references(existing, owner)))

    if not changes:
        return None

    metadata = existing.get("metadata", {})
    return Mutation(
        kind=kind,
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        changes=tuple(changes),
    )


def apply_mutation(existing: dict[str, Any], mutation: Mutation) -> dict[str, Any]:
    """Return a copy of ``existing`` with the mutation applied; untracked fields survive."""
    updated = copy.deepcopy(existing)
    for change in mutation.changes:
        set_path(updated, change.path, change.value)
    return updated


def converge_child(
    store: ClusterStore,
    kind: ChildKind,
    desired: dict[str, Any],
    owner: OwnerRef,
    max_attempts: int = 5,
) -> ChildResult:
    """
    Create, patch in place, or leave alone one child so it matches ``desired``.

    Each attempt re-reads the child. Write conflicts and create races restart
    the attempt without any delay; after ``max_attempts`` the last conflict is
    raised.

    Raises:
        ConflictError: the child kept changing under us
        OwnershipCollisionError: a child with this name belongs to someone else
        OperatorError: any other store failure, attributed to ``kind``
    """
    namespace = desired["metadata"]["namespace"]
    name = desired["metadata"]["name"]
    last_error: OperatorError | None = None

    try:
        for attempt in range(1, max_attempts + 1):
            try:
                existing: dict[str, Any] | None = store.get(kind, namespace, name)
            except NotFoundError:
                existing = None

            if existing is None:
                try:
                    created = store.create(kind, stamp(desired, owner))
                except AlreadyExistsError as e:
                    logger.info(
                        "%s %s/%s appeared concurrently (attempt %d/%d), re-reading",
                        kind.value,
                        namespace,
                        name,
                        attempt,
                        max_attempts,
                    )
                    last_error = e
                    continue
                return ChildResult(kind, Action.CREATED, created)

            check_owner(existing, owner)

            mutation = plan_mutation(kind, existing, desired, owner)
            if mutation is None:
                logger.debug("%s %s/%s already converged", kind.value, namespace, name)
                return ChildResult(kind, Action.UNCHANGED, existing)

            logger.info(
                "%s %s/%s drifted in %s",
                kind.value,
                namespace,
                name,
                ", ".join(mutation.describe()),
            )
            try:
                updated = store.update(kind, apply_mutation(existing, mutation))
            except (ConflictError, NotFoundError) as e:
                logger.info(
                    "%s %s/%s changed before write (attempt %d/%d): %s",
                    kind.value,
                    namespace,
                    name,
                    attempt,
                    max_attempts,
                    e.message,
                )
                last_error = e
                continue
            return ChildResult(kind, Action.UPDATED, updated)

        raise ConflictError(
            f"{kind.value} '{namespace}/{name}' did not converge after {max_attempts} attempts: "
            f"{last_error.message if last_error else 'no attempts made'}",
            kind=kind.value,
            resource=f"{namespace}/{name}",
        )
    except OperatorError as e:
        e.kind = e.kind or kind.value
        raise
