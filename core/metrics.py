from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

from core.segments import TENANT_VLANS

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vm_provisioner_requests_total",
    "Total HTTP requests to vm-provisioner",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vm_provisioner_request_latency_seconds",
    "Latency of HTTP requests to vm-provisioner",
    ["endpoint"],
)


# -----------------------------
# Provisioning metrics
# -----------------------------
VM_PROVISIONED_TOTAL = Counter(
    "vm_provisioned_total",
    "Provisioning attempts by tenant and outcome",
    ["tenant", "outcome"],
)

VM_PROVISION_FAILURES = Counter(
    "vm_provision_failures_total",
    "Provisioning failures by failing stage",
    ["stage"],
)

VM_PROVISION_DURATION = Histogram(
    "vm_provision_duration_seconds",
    "Wall time of the provisioning workflow",
    ["tenant"],
)

SSH_READY_WAIT = Histogram(
    "vm_ssh_ready_wait_seconds",
    "Time spent waiting for guest SSH readiness",
    buckets=(1, 2, 5, 10, 20, 30, 45, 60, 90, 120),
)

SEGMENTS_ENSURED = Counter(
    "vm_segments_ensured_total",
    "Tenant network ensure calls",
    ["tenant"],
)

TENANT_VLAN_INFO = Gauge(
    "vm_provisioner_tenant_vlan",
    "Static tenant to VLAN mapping (for Grafana filters)",
    ["tenant"],
)


def init_static_metrics() -> None:
    for tenant, vlan in TENANT_VLANS.items():
        TENANT_VLAN_INFO.labels(tenant=tenant.value).set(vlan)


def record_provision_succeeded(tenant: str, duration: float) -> None:
    VM_PROVISIONED_TOTAL.labels(tenant=tenant, outcome="success").inc()
    VM_PROVISION_DURATION.labels(tenant=tenant).observe(duration)


def record_provision_failed(tenant: Optional[str], stage: str) -> None:
    VM_PROVISIONED_TOTAL.labels(tenant=tenant or "invalid", outcome="failure").inc()
    VM_PROVISION_FAILURES.labels(stage=stage).inc()


def record_provision_unreachable(tenant: str) -> None:
    VM_PROVISIONED_TOTAL.labels(tenant=tenant, outcome="unreachable").inc()


def record_segment_ensured(tenant: str) -> None:
    SEGMENTS_ENSURED.labels(tenant=tenant).inc()


def record_ssh_wait(duration: float) -> None:
    SSH_READY_WAIT.observe(duration)
