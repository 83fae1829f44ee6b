"""
Owner references between an MCPServer and its children
"""

import copy
from dataclasses import dataclass
from typing import Any

from mcpserver_operator.config import API_GROUP_VERSION, KIND, LABEL_OWNER_UID
from mcpserver_operator.exceptions import OwnershipCollisionError


@dataclass(frozen=True)
class OwnerRef:
    """Identity of the controlling MCPServer"""

    name: str
    uid: str
    api_version: str = API_GROUP_VERSION
    kind: str = KIND

    @classmethod
    def from_parent(cls, parent: dict[str, Any]) -> "OwnerRef":
        metadata = parent.get("metadata", {})
        return cls(
            name=metadata["name"],
            uid=metadata["uid"],
            api_version=parent.get("apiVersion", API_GROUP_VERSION),
            kind=parent.get("kind", KIND),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": False,
        }


def owner_references(child: dict[str, Any], owner: OwnerRef) -> list[dict[str, Any]]:
    """The child's owner references with ours asserted and unrelated ones kept."""
    existing = child.get("metadata", {}).get("ownerReferences") or []
    kept = [ref for ref in existing if ref.get("uid") != owner.uid]
    return [*kept, owner.to_dict()]


def stamp(child: dict[str, Any], owner: OwnerRef) -> dict[str, Any]:
    """Return a copy of ``child`` carrying the controller reference and owner label."""
    stamped = copy.deepcopy(child)
    metadata = stamped.setdefault("metadata", {})
    metadata["ownerReferences"] = owner_references(child, owner)
    labels = metadata.get("labels") or {}
    labels[LABEL_OWNER_UID] = owner.uid
    metadata["labels"] = labels
    return stamped


def controller_of(child: dict[str, Any]) -> dict[str, Any] | None:
    refs = child.get("metadata", {}).get("ownerReferences") or []
    return next((ref for ref in refs if ref.get("controller")), None)


def check_owner(child: dict[str, Any], owner: OwnerRef) -> None:
    """
    Refuse to touch a child that belongs to somebody else.

    A child is ours when its controller reference carries our uid, or when it has
    no controller at all but still wears our owner-uid label (somebody stripped
    the reference; it gets restored on the next write).

    Raises:
        OwnershipCollisionError: the child is controlled by another object or unmarked
    """
    metadata = child.get("metadata", {})
    kind = child.get("kind")
    resource = f"{metadata.get('namespace')}/{metadata.get('name')}"

    controller = controller_of(child)
    if controller is not None:
        if controller.get("uid") != owner.uid:
            raise OwnershipCollisionError(
                f"{kind} '{resource}' is controlled by {controller.get('kind')} "
                f"'{controller.get('name')}' (uid {controller.get('uid')}), not by "
                f"{owner.kind} '{owner.name}' (uid {owner.uid})",
                kind=kind,
                resource=resource,
            )
        return

    labels = metadata.get("labels") or {}
    if labels.get(LABEL_OWNER_UID) != owner.uid:
        raise OwnershipCollisionError(
            f"{kind} '{resource}' exists without an owner reference to "
            f"{owner.kind} '{owner.name}'; refusing to adopt it",
            kind=kind,
            resource=resource,
        )
