#!/usr/bin/env python3
"""
MCPServer Operator for Kubernetes
"""

import logging
import threading
from typing import Any

import kopf
from kubernetes import client, config
from prometheus_client import start_http_server

from mcpserver_operator._version import __version__
from mcpserver_operator.config import (
    ANNOTATION_CHILD_EVENT,
    API_GROUP,
    API_VERSION,
    KIND,
    LABEL_MANAGED_BY,
    MANAGED_BY,
    PLURAL,
    OperatorSettings,
)
from mcpserver_operator.exceptions import NotFoundError, OperatorError
from mcpserver_operator.metrics import MetricsSink
from mcpserver_operator.ownership import controller_of
from mcpserver_operator.reconciler import MCPServerReconciler
from mcpserver_operator.store import KubernetesStore

logger = logging.getLogger(__name__)

operator_settings = OperatorSettings.from_env()

# Initialized on startup
reconciler: MCPServerReconciler | None = None

# Set on cleanup so in-flight reconciles stop issuing API calls
shutdown = threading.Event()


def _initialize_kubernetes_client() -> client.ApiClient:
    """Load Kubernetes configuration, preferring the in-cluster service account."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")
    return client.ApiClient()


def build_reconciler(settings: OperatorSettings, metrics: MetricsSink) -> MCPServerReconciler:
    """Wire the reconcile loop to the live cluster."""
    api_client = _initialize_kubernetes_client()
    store = KubernetesStore(api_client, request_timeout=settings.request_timeout)
    return MCPServerReconciler(store, metrics, settings)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_kwargs: Any) -> None:
    """Configure kopf, start the metrics endpoint and build the reconciler."""
    global reconciler

    logging.basicConfig(level=operator_settings.log_level)

    # Keep kopf's bookkeeping out of .status, which belongs to the status projector
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=API_GROUP)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=API_GROUP)
    settings.posting.level = logging.WARNING
    settings.execution.max_workers = operator_settings.max_workers
    settings.networking.request_timeout = operator_settings.request_timeout

    metrics = MetricsSink()
    start_http_server(operator_settings.metrics_port)
    logger.info("Prometheus metrics server started on port %d", operator_settings.metrics_port)

    reconciler = build_reconciler(operator_settings, metrics)
    reconciler.seed_inventory(operator_settings.watch_namespace)
    logger.info("MCPServer operator %s ready", __version__)


@kopf.on.cleanup()
def cleanup(**_kwargs: Any) -> None:
    """Stop in-flight reconciles from starting new API calls."""
    shutdown.set()
    logger.info("MCPServer operator shutting down")


@kopf.on.resume(API_GROUP, API_VERSION, PLURAL)
@kopf.on.create(API_GROUP, API_VERSION, PLURAL)
@kopf.on.update(API_GROUP, API_VERSION, PLURAL)
def reconcile_mcpserver(name, namespace, logger, retry=0, **_kwargs):  # type: ignore
    """Converge an MCPServer whenever it is created, changed or seen on startup"""
    if reconciler is None:
        raise kopf.TemporaryError("Reconciler not initialized", delay=operator_settings.retry_delay)

    result = reconciler.reconcile(namespace, name, cancel=shutdown)

    if result.requeue:
        delay = result.requeue_after or operator_settings.backoff(retry)
        logger.warning(
            f"Reconcile of {KIND} {name} failed, retrying in {delay:.0f}s: {result.message}"
        )
        raise kopf.TemporaryError(result.message, delay=delay)

    logger.info(f"Reconciled {KIND} {name} in namespace {namespace}: {result.state.value}")


@kopf.on.event("apps", "v1", "deployments", labels={LABEL_MANAGED_BY: MANAGED_BY})
@kopf.on.event("", "v1", "services", labels={LABEL_MANAGED_BY: MANAGED_BY})
def child_changed(body, type, logger, **_kwargs):  # type: ignore
    """
    Wake the owning MCPServer when a managed child changes or disappears

    The parent is annotated instead of reconciled here: kopf then runs the
    MCPServer update handler, one at a time per object and with its retries.
    """
    # Initial listing; the resume handler already covers existing parents
    if type is None:
        return

    owner = controller_of(body)
    if owner is None or owner.get("kind") != KIND:
        return

    if reconciler is None:
        logger.debug("Reconciler not initialized yet, ignoring child event")
        return

    metadata = body.get("metadata", {})
    namespace = metadata.get("namespace")
    parent_name = owner.get("name")
    marker = f"{body.get('kind', 'child')}/{metadata.get('resourceVersion', '')}/{type}"

    attempts = max(1, operator_settings.max_conflict_retries)
    for attempt in range(attempts):
        try:
            reconciler.store.annotate_parent(
                namespace, parent_name, {ANNOTATION_CHILD_EVENT: marker}
            )
        except NotFoundError:
            logger.debug(f"{KIND} {parent_name} is gone, ignoring child {type}")
            return
        except OperatorError as e:
            delay = operator_settings.backoff(attempt)
            logger.warning(
                f"Could not signal {KIND} {parent_name} after child {type} "
                f"(attempt {attempt + 1}/{attempts}): {e.message}"
            )
            if attempt + 1 == attempts or shutdown.wait(delay):
                break
            continue
        logger.debug(f"Signalled {KIND} {parent_name} after child {type}")
        return

    logger.error(f"Gave up signalling {KIND} {parent_name} after child {type}")


def main() -> None:
    """Main entry point for the operator."""
    logging.basicConfig(level=operator_settings.log_level)
    logger.info("Starting MCPServer Operator %s...", __version__)

    if operator_settings.watch_namespace:
        scope: dict[str, Any] = {"namespaces": [operator_settings.watch_namespace]}
    else:
        scope = {"clusterwide": True}

    kopf.run(
        **scope,
        # Enable built-in health endpoints
        liveness_endpoint=operator_settings.health_endpoint,
    )


if __name__ == "__main__":
    main()
