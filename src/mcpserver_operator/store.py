"""
Cluster store adapter

The reconcile loop only talks to the cluster through ``ClusterStore``. Objects
cross this boundary as plain camelCase dicts, exactly as the API server
serializes them.
"""

import json
import logging
from typing import Any, Protocol

from kubernetes import client

from mcpserver_operator.config import API_GROUP, API_VERSION, KIND, PLURAL
from mcpserver_operator.exceptions import translate_api_errors
from mcpserver_operator.models import ChildKind

logger = logging.getLogger(__name__)

JSON_PATCH = "application/json-patch+json"
MERGE_PATCH = "application/merge-patch+json"


class ClusterStore(Protocol):
    """Capabilities the reconcile loop needs from the cluster"""

    def get_parent(self, namespace: str, name: str) -> dict[str, Any]: ...

    def list_parents(self, namespace: str) -> list[dict[str, Any]]: ...

    def patch_parent_status(
        self,
        namespace: str,
        name: str,
        status: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]: ...

    def annotate_parent(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> dict[str, Any]: ...

    def get(self, kind: ChildKind, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, kind: ChildKind, body: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, kind: ChildKind, body: dict[str, Any]) -> dict[str, Any]: ...


def _json(response: Any) -> dict[str, Any]:
    """Decode a raw (non-preloaded) API response."""
    decoded: dict[str, Any] = json.loads(response.data)
    return decoded


class KubernetesStore:
    """
    ClusterStore backed by the official Kubernetes Python client

    Children are read and written as raw JSON (``_preload_content=False``) so
    fields the installed client models do not know survive a replace.
    """

    def __init__(
        self, api_client: client.ApiClient | None = None, request_timeout: float = 30.0
    ) -> None:
        self.k8s_custom = client.CustomObjectsApi(api_client)
        self.k8s_apps = client.AppsV1Api(api_client)
        self.k8s_core = client.CoreV1Api(api_client)
        self.request_timeout = request_timeout

    @translate_api_errors("reading", kind=KIND)
    def get_parent(self, namespace: str, name: str) -> dict[str, Any]:
        parent: dict[str, Any] = self.k8s_custom.get_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            namespace,
            PLURAL,
            name,
            _request_timeout=self.request_timeout,
        )
        return parent

    @translate_api_errors("listing", kind=KIND)
    def list_parents(self, namespace: str) -> list[dict[str, Any]]:
        if namespace:
            result = self.k8s_custom.list_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, PLURAL, _request_timeout=self.request_timeout
            )
        else:
            result = self.k8s_custom.list_cluster_custom_object(
                API_GROUP, API_VERSION, PLURAL, _request_timeout=self.request_timeout
            )
        items: list[dict[str, Any]] = result.get("items", [])
        return items

    @translate_api_errors("updating status of", kind=KIND, guarded_by="resource_version")
    def patch_parent_status(
        self,
        namespace: str,
        name: str,
        status: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        """
        Replace ``.status`` through the status subresource.

        With ``resource_version`` (pass it by keyword) the patch only applies if
        the parent has not changed since it was read; otherwise ConflictError
        is raised.
        """
        operations: list[dict[str, Any]] = []
        if resource_version:
            operations.append(
                {"op": "test", "path": "/metadata/resourceVersion", "value": resource_version}
            )
        operations.append({"op": "add", "path": "/status", "value": status})

        patched: dict[str, Any] = self.k8s_custom.patch_namespaced_custom_object_status(
            API_GROUP,
            API_VERSION,
            namespace,
            PLURAL,
            name,
            operations,
            _content_type=JSON_PATCH,
            _request_timeout=self.request_timeout,
        )
        logger.info("Updated status of %s %s/%s", KIND, namespace, name)
        return patched

    @translate_api_errors("annotating", kind=KIND)
    def annotate_parent(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> dict[str, Any]:
        patched: dict[str, Any] = self.k8s_custom.patch_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            namespace,
            PLURAL,
            name,
            {"metadata": {"annotations": annotations}},
            _content_type=MERGE_PATCH,
            _request_timeout=self.request_timeout,
        )
        logger.debug("Annotated %s %s/%s with %s", KIND, namespace, name, annotations)
        return patched

    @translate_api_errors("reading")
    def get(self, kind: ChildKind, namespace: str, name: str) -> dict[str, Any]:
        if kind is ChildKind.DEPLOYMENT:
            response = self.k8s_apps.read_namespaced_deployment(
                name=name,
                namespace=namespace,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        else:
            response = self.k8s_core.read_namespaced_service(
                name=name,
                namespace=namespace,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        return _json(response)

    @translate_api_errors("creating")
    def create(self, kind: ChildKind, body: dict[str, Any]) -> dict[str, Any]:
        namespace = body["metadata"]["namespace"]
        if kind is ChildKind.DEPLOYMENT:
            response = self.k8s_apps.create_namespaced_deployment(
                namespace=namespace,
                body=body,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        else:
            response = self.k8s_core.create_namespaced_service(
                namespace=namespace,
                body=body,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        logger.info("Created %s %s/%s", kind.value, namespace, body["metadata"]["name"])
        return _json(response)

    @translate_api_errors("updating")
    def update(self, kind: ChildKind, body: dict[str, Any]) -> dict[str, Any]:
        # PUT with the fetched resourceVersion so stale writes fail with 409
        namespace = body["metadata"]["namespace"]
        name = body["metadata"]["name"]
        if kind is ChildKind.DEPLOYMENT:
            response = self.k8s_apps.replace_namespaced_deployment(
                name=name,
                namespace=namespace,
                body=body,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        else:
            response = self.k8s_core.replace_namespaced_service(
                name=name,
                namespace=namespace,
                body=body,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        logger.info("Updated %s %s/%s", kind.value, namespace, name)
        return _json(response)
