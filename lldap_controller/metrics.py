"""Prometheus metrics for the controller."""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class Metrics:
    """Counters and gauges updated after every reconciliation pass"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.reconciliations = Counter(
            "lldap_controller_reconciliations_total",
            "Total number of reconciliation passes",
            ["kind", "result"],
            registry=self.registry,
        )
        self.users_created = Counter(
            "lldap_controller_users_created_total",
            "Directory users created",
            registry=self.registry,
        )
        self.users_deleted = Counter(
            "lldap_controller_users_deleted_total",
            "Directory users deleted",
            registry=self.registry,
        )
        self.group_edges_added = Counter(
            "lldap_controller_group_memberships_added_total",
            "Group memberships added",
            registry=self.registry,
        )
        self.group_edges_removed = Counter(
            "lldap_controller_group_memberships_removed_total",
            "Group memberships removed",
            registry=self.registry,
        )
        self.secrets_created = Counter(
            "lldap_controller_secrets_created_total",
            "Credential secrets created",
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "lldap_controller_queue_depth",
            "Keys waiting in the work queue",
            registry=self.registry,
        )
        self.last_reconciliation_timestamp = Gauge(
            "lldap_controller_last_reconciliation_timestamp",
            "Timestamp of last reconciliation pass",
            registry=self.registry,
        )

    def record_pass(self, kind: str, stats, result: str):
        """Record metrics from a reconciliation pass"""
        self.reconciliations.labels(kind=kind, result=result).inc()
        self.users_created.inc(stats.users_created)
        self.users_deleted.inc(stats.users_deleted)
        self.group_edges_added.inc(stats.groups_added)
        self.group_edges_removed.inc(stats.groups_removed)
        self.secrets_created.inc(stats.secrets_created)
        self.last_reconciliation_timestamp.set_to_current_time()

    def serve(self, port: int):
        start_http_server(port, registry=self.registry)
