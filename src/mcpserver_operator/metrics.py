"""
Prometheus metrics for the MCPServer operator

A single MetricsSink is built at startup and handed to the reconciler, so tests
can use their own CollectorRegistry.

Inventory gauges are kept from the phase each reconcile publishes, seeded once
from a listing at startup, so no reconcile has to list the namespace.
"""

import threading
from collections import Counter as Tally
from collections.abc import Iterable
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from mcpserver_operator.models import Phase


class MetricsSink:
    """Operator metrics bound to one registry"""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.registry = registry

        self.servers_total = Gauge(
            "mcpserver_total",
            "Total number of MCPServer resources",
            ["namespace"],
            registry=registry,
        )
        self.servers_by_phase = Gauge(
            "mcpserver_phase",
            "Number of MCPServers by phase",
            ["namespace", "phase"],
            registry=registry,
        )
        self.child_creation_errors = Counter(
            "mcpserver_child_creation_errors_total",
            "Total errors converging child resources",
            ["namespace", "name", "kind"],
            registry=registry,
        )
        self.reconcile_duration = Histogram(
            "mcpserver_reconcile_duration_seconds",
            "Time taken to reconcile an MCPServer",
            ["namespace"],
            registry=registry,
        )
        self.reconcile_total = Counter(
            "mcpserver_reconcile",
            "Reconcile attempts by outcome",
            ["namespace", "result"],
            registry=registry,
        )

        # (namespace, name) -> last published phase; kopf runs handlers in threads
        self._phases: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def observe_reconcile(self, namespace: str, result: str, duration: float) -> None:
        self.reconcile_duration.labels(namespace=namespace).observe(duration)
        self.reconcile_total.labels(namespace=namespace, result=result).inc()

    def child_error(self, namespace: str, name: str, kind: str) -> None:
        self.child_creation_errors.labels(namespace=namespace, name=name, kind=kind).inc()

    def record_inventory(self, parents: Iterable[dict[str, Any]]) -> None:
        """Seed the inventory from a listing of MCPServers across namespaces."""
        with self._lock:
            touched = {namespace for namespace, _name in self._phases}
            self._phases.clear()
            for parent in parents:
                metadata = parent.get("metadata", {})
                key = (metadata.get("namespace", ""), metadata.get("name", ""))
                self._phases[key] = (parent.get("status") or {}).get("phase") or ""
                touched.add(key[0])
            for namespace in touched:
                self._publish(namespace)

    def record_phase(self, namespace: str, name: str, phase: str) -> None:
        """Track the phase just published for one MCPServer."""
        with self._lock:
            self._phases[(namespace, name)] = phase
            self._publish(namespace)

    def forget(self, namespace: str, name: str) -> None:
        """Drop an MCPServer that no longer exists."""
        with self._lock:
            self._phases.pop((namespace, name), None)
            self._publish(namespace)

    def _publish(self, namespace: str) -> None:
        phases: Tally[str] = Tally(
            phase or Phase.PENDING.value
            for (ns, _name), phase in self._phases.items()
            if ns == namespace
        )
        self.servers_total.labels(namespace=namespace).set(sum(phases.values()))
        for phase in [p.value for p in Phase] + sorted(set(phases) - {p.value for p in Phase}):
            self.servers_by_phase.labels(namespace=namespace, phase=phase).set(phases[phase])
