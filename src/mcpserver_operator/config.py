"""
Operator configuration loaded from environment variables
"""

import os
from dataclasses import dataclass

# MCPServer custom resource coordinates
API_GROUP = "mcp.mcp.dev"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
KIND = "MCPServer"
PLURAL = "mcpservers"

# Labels stamped on every managed child
LABEL_APP = "app"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_OWNER_UID = "mcp.mcp.dev/owner-uid"
MANAGED_BY = "mcpserver-operator"

# Bumped on the parent whenever a managed child changes; must not share the
# kopf storage prefix or kopf would leave it out of the diff
ANNOTATION_CHILD_EVENT = "reconcile.mcp.mcp.dev/child-event"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class OperatorSettings:
    """Runtime settings for the operator process and the reconcile loop"""

    watch_namespace: str = ""
    metrics_port: int = 8080
    health_endpoint: str = "http://0.0.0.0:8081/healthz"
    log_level: str = "INFO"

    # Reconcile behaviour
    max_conflict_retries: int = 5
    request_timeout: float = 30.0
    retry_delay: float = 5.0
    max_retry_delay: float = 300.0
    error_backoff: float = 60.0
    max_workers: int = 8

    # Child rendering
    container_name: str = "mcp-server"
    secret_env_key: str = "API_KEY"
    image_pull_policy: str = ""

    @classmethod
    def from_env(cls) -> "OperatorSettings":
        """Build settings from MCP_* environment variables, falling back to defaults."""
        return cls(
            watch_namespace=os.getenv("MCP_WATCH_NAMESPACE", ""),
            metrics_port=_env_int("MCP_METRICS_PORT", 8080),
            health_endpoint=os.getenv("MCP_HEALTH_ENDPOINT", "http://0.0.0.0:8081/healthz"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            max_conflict_retries=_env_int("MCP_MAX_CONFLICT_RETRIES", 5),
            request_timeout=_env_float("MCP_REQUEST_TIMEOUT", 30.0),
            retry_delay=_env_float("MCP_RETRY_DELAY", 5.0),
            max_retry_delay=_env_float("MCP_MAX_RETRY_DELAY", 300.0),
            error_backoff=_env_float("MCP_ERROR_BACKOFF", 60.0),
            max_workers=_env_int("MCP_MAX_WORKERS", 8),
            container_name=os.getenv("MCP_CONTAINER_NAME", "mcp-server"),
            secret_env_key=os.getenv("MCP_SECRET_ENV_KEY", "API_KEY"),
            image_pull_policy=os.getenv("MCP_IMAGE_PULL_POLICY", ""),
        )

    def backoff(self, retry: int) -> float:
        """Exponential requeue delay for the given retry count."""
        return float(min(self.retry_delay * (2 ** max(retry, 0)), self.max_retry_delay))
