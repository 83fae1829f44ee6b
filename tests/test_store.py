"""Tests for the Kubernetes-backed cluster store."""

import json
from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from pydantic import BaseModel, ConfigDict, ValidationError
from urllib3.exceptions import ProtocolError

from mcpserver_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    SpecValidationError,
    TransportError,
)
from mcpserver_operator.models import ChildKind
from mcpserver_operator.store import KubernetesStore


def _api_error(status: int, reason: str = "", body: dict[str, Any] | None = None) -> ApiException:
    error = ApiException(status=status, reason=reason)
    if body is not None:
        error.body = json.dumps(body)
    return error


def _raw(obj: dict[str, Any]) -> MagicMock:
    """Response as returned with _preload_content=False."""
    return MagicMock(data=json.dumps(obj).encode())


def _service_body() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "weather", "namespace": "tools"},
        "spec": {"ports": [{"port": 8080}]},
    }


@pytest.fixture
def store() -> Generator[KubernetesStore, None, None]:
    """KubernetesStore with every API group mocked."""
    with (
        patch("kubernetes.client.CustomObjectsApi"),
        patch("kubernetes.client.AppsV1Api"),
        patch("kubernetes.client.CoreV1Api"),
    ):
        yield KubernetesStore(MagicMock(), request_timeout=7.0)


class TestParentAccess:
    """Test reads and status writes of MCPServer objects."""

    def test_get_parent(self, store: KubernetesStore) -> None:
        """Test the parent is read from the mcp.mcp.dev group."""
        store.k8s_custom.get_namespaced_custom_object.return_value = {"spec": {"image": "a"}}

        assert store.get_parent("tools", "weather") == {"spec": {"image": "a"}}
        store.k8s_custom.get_namespaced_custom_object.assert_called_once_with(
            "mcp.mcp.dev", "v1alpha1", "tools", "mcpservers", "weather", _request_timeout=7.0
        )

    def test_missing_parent_is_not_found(self, store: KubernetesStore) -> None:
        """Test a 404 becomes NotFoundError naming the parent."""
        store.k8s_custom.get_namespaced_custom_object.side_effect = _api_error(404, "Not Found")

        with pytest.raises(NotFoundError) as exc_info:
            store.get_parent("tools", "weather")

        assert exc_info.value.kind == "MCPServer"
        assert exc_info.value.resource == "tools/weather"

    def test_list_parents_namespaced_and_clusterwide(self, store: KubernetesStore) -> None:
        """Test listing uses the namespace when given and the whole cluster otherwise."""
        store.k8s_custom.list_namespaced_custom_object.return_value = {"items": [{"a": 1}]}
        store.k8s_custom.list_cluster_custom_object.return_value = {"items": []}

        assert store.list_parents("tools") == [{"a": 1}]
        assert store.list_parents("") == []
        store.k8s_custom.list_cluster_custom_object.assert_called_once()

    def test_status_written_as_json_patch(self, store: KubernetesStore) -> None:
        """Test status goes to the status subresource as a single add operation."""
        status = {"phase": "Running", "availableReplicas": 1}

        store.patch_parent_status("tools", "weather", status)

        call = store.k8s_custom.patch_namespaced_custom_object_status.call_args
        assert call.args[:5] == ("mcp.mcp.dev", "v1alpha1", "tools", "mcpservers", "weather")
        assert call.args[5] == [{"op": "add", "path": "/status", "value": status}]
        assert call.kwargs["_content_type"] == "application/json-patch+json"

    def test_status_guarded_by_resource_version(self, store: KubernetesStore) -> None:
        """Test a read resourceVersion is checked by the same patch."""
        status = {"phase": "Pending"}

        store.patch_parent_status("tools", "weather", status, resource_version="41")

        operations = store.k8s_custom.patch_namespaced_custom_object_status.call_args.args[5]
        assert operations == [
            {"op": "test", "path": "/metadata/resourceVersion", "value": "41"},
            {"op": "add", "path": "/status", "value": status},
        ]

    def test_failed_guard_is_conflict(self, store: KubernetesStore) -> None:
        """Test a failed resourceVersion test is reported as a write conflict."""
        store.k8s_custom.patch_namespaced_custom_object_status.side_effect = _api_error(
            422, "Unprocessable Entity"
        )

        with pytest.raises(ConflictError) as exc_info:
            store.patch_parent_status(
                "tools", "weather", {"phase": "Pending"}, resource_version="41"
            )

        assert exc_info.value.kind == "MCPServer"
        assert exc_info.value.resource == "tools/weather"

    def test_annotate_parent_merges(self, store: KubernetesStore) -> None:
        """Test annotations are sent as a merge patch on the main resource."""
        store.annotate_parent("tools", "weather", {"reconcile.mcp.mcp.dev/child-event": "x"})

        call = store.k8s_custom.patch_namespaced_custom_object.call_args
        assert call.args[:5] == ("mcp.mcp.dev", "v1alpha1", "tools", "mcpservers", "weather")
        assert call.args[5] == {
            "metadata": {"annotations": {"reconcile.mcp.mcp.dev/child-event": "x"}}
        }
        assert call.kwargs["_content_type"] == "application/merge-patch+json"


class TestChildAccess:
    """Test child calls exchange raw JSON with the API server."""

    def test_get_deployment_keeps_unknown_fields(self, store: KubernetesStore) -> None:
        """Test reads are decoded from the raw response, fields the client lacks included."""
        raw = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "weather", "namespace": "tools", "resourceVersion": "5"},
            "spec": {"replicas": 1, "futureField": {"enabled": True}},
        }
        store.k8s_apps.read_namespaced_deployment.return_value = _raw(raw)

        result = store.get(ChildKind.DEPLOYMENT, "tools", "weather")

        assert result == raw
        store.k8s_apps.read_namespaced_deployment.assert_called_once_with(
            name="weather", namespace="tools", _preload_content=False, _request_timeout=7.0
        )

    def test_create_service(self, store: KubernetesStore) -> None:
        """Test a Service body is created in its own namespace."""
        created = _service_body()
        created["spec"]["clusterIP"] = "10.0.0.1"
        store.k8s_core.create_namespaced_service.return_value = _raw(created)

        result = store.create(ChildKind.SERVICE, _service_body())

        assert result["spec"]["clusterIP"] == "10.0.0.1"
        kwargs = store.k8s_core.create_namespaced_service.call_args.kwargs
        assert kwargs["namespace"] == "tools"
        assert kwargs["_preload_content"] is False

    def test_update_uses_replace(self, store: KubernetesStore) -> None:
        """Test updates are full replaces carrying the read resourceVersion."""
        body = _service_body()
        body["metadata"]["resourceVersion"] = "12"
        body["spec"]["futureField"] = "kept"
        store.k8s_core.replace_namespaced_service.return_value = _raw(body)

        result = store.update(ChildKind.SERVICE, body)

        kwargs = store.k8s_core.replace_namespaced_service.call_args.kwargs
        assert kwargs["name"] == "weather"
        assert kwargs["body"]["metadata"]["resourceVersion"] == "12"
        assert kwargs["body"]["spec"]["futureField"] == "kept"
        assert result["spec"]["futureField"] == "kept"


class TestErrorTranslation:
    """Test API failures map onto the operator's error types."""

    def test_already_exists(self, store: KubernetesStore) -> None:
        """Test a 409 with reason AlreadyExists is a create race."""
        store.k8s_core.create_namespaced_service.side_effect = _api_error(
            409, "Conflict", {"reason": "AlreadyExists"}
        )

        with pytest.raises(AlreadyExistsError) as exc_info:
            store.create(ChildKind.SERVICE, _service_body())

        assert exc_info.value.kind == "Service"
        assert exc_info.value.resource == "tools/weather"

    def test_conflict(self, store: KubernetesStore) -> None:
        """Test any other 409 is a write conflict."""
        store.k8s_core.replace_namespaced_service.side_effect = _api_error(
            409, "Conflict", {"reason": "Conflict"}
        )

        with pytest.raises(ConflictError):
            store.update(ChildKind.SERVICE, _service_body())

    def test_invalid(self, store: KubernetesStore) -> None:
        """Test a 422 is reported as a validation failure."""
        store.k8s_apps.create_namespaced_deployment.side_effect = _api_error(422, "Invalid")
        body = {"metadata": {"name": "weather", "namespace": "tools"}}

        with pytest.raises(SpecValidationError, match="Invalid"):
            store.create(ChildKind.DEPLOYMENT, body)

    def test_server_error(self, store: KubernetesStore) -> None:
        """Test a 500 is a transport failure."""
        store.k8s_apps.read_namespaced_deployment.side_effect = _api_error(500, "Internal")

        with pytest.raises(TransportError) as exc_info:
            store.get(ChildKind.DEPLOYMENT, "tools", "weather")

        assert exc_info.value.kind == "Deployment"

    def test_connection_failure(self, store: KubernetesStore) -> None:
        """Test a dropped connection is a transport failure."""
        store.k8s_custom.list_namespaced_custom_object.side_effect = ProtocolError(
            "Connection aborted"
        )

        with pytest.raises(TransportError, match="Connection aborted"):
            store.list_parents("tools")

    def test_unguarded_invalid_status_stays_invalid(self, store: KubernetesStore) -> None:
        """Test a 422 without a resourceVersion test is still a validation failure."""
        store.k8s_custom.patch_namespaced_custom_object_status.side_effect = _api_error(
            422, "Invalid"
        )

        with pytest.raises(SpecValidationError):
            store.patch_parent_status("tools", "weather", {"phase": "Pending"})

    def test_client_model_rejection(self, store: KubernetesStore) -> None:
        """Test a body refused by strict client models is a validation failure."""

        class Body(BaseModel):
            model_config = ConfigDict(extra="forbid")

            name: str

        with pytest.raises(ValidationError) as validation:
            Body.model_validate({"name": "weather", "futureField": 1})
        store.k8s_core.replace_namespaced_service.side_effect = validation.value

        with pytest.raises(SpecValidationError, match="rejected by the client models") as exc_info:
            store.update(ChildKind.SERVICE, _service_body())

        assert exc_info.value.kind == "Service"
        assert exc_info.value.resource == "tools/weather"
