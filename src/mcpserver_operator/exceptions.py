"""
Error taxonomy for the MCPServer reconcile loop and the Kubernetes error translation
"""

import functools
import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from kubernetes.client.rest import ApiException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)


class OperatorError(Exception):
    """Base exception for reconcile operations"""

    reason = "Error"

    def __init__(self, message: str, kind: str | None = None, resource: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.resource = resource


class NotFoundError(OperatorError):
    """Parent or child vanished; benign"""

    reason = "NotFound"


class AlreadyExistsError(OperatorError):
    """Create raced with another creator"""

    reason = "AlreadyExists"


class ConflictError(OperatorError):
    """Optimistic-concurrency collision on write"""

    reason = "Conflict"


class SpecValidationError(OperatorError):
    """Malformed desired state reached the operator"""

    reason = "ValidationError"


class OwnershipCollisionError(OperatorError):
    """A child with our name is controlled by someone else"""

    reason = "OwnershipCollision"


class TransportError(OperatorError):
    """The API server could not be reached or failed the call"""

    reason = "TransportError"


class ReconcileCancelled(OperatorError):
    """The caller asked the attempt to stop"""

    reason = "Cancelled"


def _api_reason(e: ApiException) -> str | None:
    """Extract the machine-readable Status reason from an ApiException body."""
    if not e.body:
        return None
    try:
        body = json.loads(e.body)
    except (TypeError, ValueError):
        return None
    return body.get("reason") if isinstance(body, dict) else None


def _resource_id(
    args: tuple[Any, ...], kwargs: dict[str, Any], fixed_kind: str | None
) -> tuple[str, str]:
    """Best-effort (kind, namespace/name) for log and error messages.

    Store methods take ``(self, kind, ...)`` unless the decorator pins the kind,
    followed by either a full object body or ``namespace, name``.
    """
    if fixed_kind:
        kind, rest = fixed_kind, args[1:]
    else:
        raw_kind = kwargs.get("kind", args[1] if len(args) > 1 else "unknown")
        kind = str(getattr(raw_kind, "value", raw_kind))
        rest = args[2:]

    body = kwargs.get("body", rest[0] if rest and isinstance(rest[0], dict) else None)
    if isinstance(body, dict):
        metadata = body.get("metadata", {})
        return kind, f"{metadata.get('namespace')}/{metadata.get('name')}"

    namespace = kwargs.get("namespace", rest[0] if rest else None)
    name = kwargs.get("name", rest[1] if len(rest) > 1 else None)
    return kind, f"{namespace}/{name}"


def translate_api_errors(
    operation: str, kind: str | None = None, guarded_by: str | None = None
) -> Callable[[F], F]:
    """
    Decorator converting Kubernetes client failures into the operator's error taxonomy.

    Args:
        operation: Description of the operation (e.g., "reading", "creating")
        kind: Resource kind when the wrapped call does not take one as first argument
        guarded_by: Keyword argument that, when set, adds a JSON patch "test"
            precondition to the call; a 422 then means the object changed since
            it was read
    """
    fixed_kind = kind

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ApiException as e:
                kind, resource = _resource_id(args, kwargs, fixed_kind)
                error_msg = f"Kubernetes API error while {operation} {kind} '{resource}'"

                if e.status == 404:
                    logger.debug("%s: not found (404)", error_msg)
                    raise NotFoundError(
                        f"{kind} '{resource}' not found", kind=kind, resource=resource
                    ) from e

                if e.status == 409:
                    if _api_reason(e) == "AlreadyExists":
                        logger.info("%s: already exists", error_msg)
                        raise AlreadyExistsError(
                            f"{kind} '{resource}' already exists", kind=kind, resource=resource
                        ) from e
                    logger.info("%s: conflict, object changed since read", error_msg)
                    raise ConflictError(
                        f"{kind} '{resource}' was modified concurrently",
                        kind=kind,
                        resource=resource,
                    ) from e

                if guarded_by and kwargs.get(guarded_by) and e.status == 422:
                    logger.info("%s: precondition failed, object changed since read", error_msg)
                    raise ConflictError(
                        f"{kind} '{resource}' was modified concurrently",
                        kind=kind,
                        resource=resource,
                    ) from e

                if e.status in (400, 422):
                    logger.warning("%s: rejected (%s): %s", error_msg, e.status, e.reason)
                    raise SpecValidationError(
                        f"{kind} '{resource}' rejected by the API server: {e.reason}",
                        kind=kind,
                        resource=resource,
                    ) from e

                logger.error("%s: server error (%s): %s", error_msg, e.status, e.reason)
                if e.body:
                    logger.error("Error details: %s", e.body)
                raise TransportError(
                    f"Failed {operation} {kind} '{resource}': {e.reason}",
                    kind=kind,
                    resource=resource,
                ) from e

            except ValidationError as e:
                # Client versions with strict models validate bodies before sending
                kind, resource = _resource_id(args, kwargs, fixed_kind)
                logger.warning("%s '%s' rejected by the client models: %s", kind, resource, e)
                raise SpecValidationError(
                    f"{kind} '{resource}' rejected by the client models: "
                    f"{e.error_count()} error(s)",
                    kind=kind,
                    resource=resource,
                ) from e

            except (HTTPError, OSError) as e:
                kind, resource = _resource_id(args, kwargs, fixed_kind)
                logger.error("Transport failure while %s %s '%s': %s", operation, kind, resource, e)
                raise TransportError(
                    f"Failed {operation} {kind} '{resource}': {e}", kind=kind, resource=resource
                ) from e

        return wrapper  # type: ignore[return-value]

    return decorator
