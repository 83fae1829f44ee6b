"""
Desired-state rendering for MCPServer children

Everything here is pure: the same parent always renders the same Deployment
and Service, and nothing talks to the cluster.
"""

from typing import Any

from kubernetes import client
from kubernetes.client.models import (
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1SecretKeySelector,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)
from pydantic import ValidationError

from mcpserver_operator.config import LABEL_APP, LABEL_MANAGED_BY, MANAGED_BY, OperatorSettings
from mcpserver_operator.exceptions import SpecValidationError
from mcpserver_operator.models import MCPServerSpec

# Tags that are expected to move and therefore must always be re-pulled
MUTABLE_TAGS = ["latest", "edge", "dev", "main", "master", "develop", "staging"]

_serializer = client.ApiClient()


def parse_spec(raw: dict[str, Any] | None, name: str = "") -> MCPServerSpec:
    """Parse a raw MCPServer spec, raising SpecValidationError when it is malformed."""
    try:
        return MCPServerSpec.model_validate(raw or {})
    except ValidationError as e:
        raise SpecValidationError(
            f"MCPServer '{name}' has an invalid spec: {e.error_count()} error(s): {e}",
            resource=name,
        ) from e


def selector_labels(name: str) -> dict[str, str]:
    """Label selector shared by the Deployment, its pod template and the Service."""
    return {LABEL_APP: name}


def determine_image_pull_policy(image: str) -> str:
    """
    Determine appropriate imagePullPolicy based on image tag.

    Mutable tags (latest, edge, dev, etc.) get "Always" so updates are pulled;
    anything else is treated as immutable and gets "IfNotPresent".
    """
    # Digest references are immutable by definition
    if "@" in image:
        return "IfNotPresent"

    # Only the last path segment can carry a tag (registry host may contain a port)
    last_segment = image.rsplit("/", 1)[-1]
    image_tag = last_segment.split(":")[-1] if ":" in last_segment else "latest"

    if image_tag in MUTABLE_TAGS:
        return "Always"

    return "IfNotPresent"


def _child_metadata(name: str, namespace: str) -> V1ObjectMeta:
    return V1ObjectMeta(
        name=name,
        namespace=namespace,
        labels={**selector_labels(name), LABEL_MANAGED_BY: MANAGED_BY},
    )


def _secret_env(spec: MCPServerSpec, settings: OperatorSettings) -> list[V1EnvVar] | None:
    if not spec.secret_name:
        return None

    return [
        V1EnvVar(
            name=settings.secret_env_key,
            value_from=V1EnvVarSource(
                secret_key_ref=V1SecretKeySelector(
                    name=spec.secret_name,
                    key=settings.secret_env_key,
                )
            ),
        )
    ]


def _resources(spec: MCPServerSpec) -> V1ResourceRequirements | None:
    if spec.resources is None:
        return None
    if not spec.resources.requests and not spec.resources.limits:
        return None

    return V1ResourceRequirements(
        requests=dict(spec.resources.requests) if spec.resources.requests else None,
        limits=dict(spec.resources.limits) if spec.resources.limits else None,
    )


def build_deployment(
    name: str, namespace: str, spec: MCPServerSpec, settings: OperatorSettings
) -> V1Deployment:
    """Render the Deployment running the MCP server container"""
    pull_policy = settings.image_pull_policy or determine_image_pull_policy(spec.image)

    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=_child_metadata(name, namespace),
        spec=V1DeploymentSpec(
            replicas=spec.replicas,
            selector=V1LabelSelector(match_labels=selector_labels(name)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=selector_labels(name)),
                spec=V1PodSpec(
                    containers=[
                        V1Container(
                            name=settings.container_name,
                            image=spec.image,
                            image_pull_policy=pull_policy,
                            ports=[
                                V1ContainerPort(
                                    container_port=spec.port, name="http", protocol="TCP"
                                )
                            ],
                            env=_secret_env(spec, settings),
                            resources=_resources(spec),
                        )
                    ],
                ),
            ),
        ),
    )


def build_service(name: str, namespace: str, spec: MCPServerSpec) -> V1Service:
    """Render the ClusterIP Service fronting the Deployment's pods"""
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=_child_metadata(name, namespace),
        spec=V1ServiceSpec(
            type="ClusterIP",
            internal_traffic_policy="Cluster",
            selector=selector_labels(name),
            ports=[
                V1ServicePort(
                    name="http",
                    port=spec.port,
                    target_port=spec.port,
                    protocol="TCP",
                )
            ],
        ),
    )


def build(
    name: str, namespace: str, spec: MCPServerSpec, settings: OperatorSettings
) -> tuple[V1Deployment, V1Service]:
    """Render both children for one MCPServer."""
    return (
        build_deployment(name, namespace, spec, settings),
        build_service(name, namespace, spec),
    )


def to_manifest(obj: Any) -> dict[str, Any]:
    """Serialize a kubernetes model into the camelCase dict the API server speaks."""
    manifest: dict[str, Any] = _serializer.sanitize_for_serialization(obj)
    return manifest
