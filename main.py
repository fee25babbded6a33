import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.settings import LIBVIRT_URI, METRICS_ENABLED
from core.control_plane import ControlPlane
from core.errors import (
    ControlPlaneError,
    MachineExistsError,
    MachineNotRunningError,
    MachineUnreachableError,
    ProvisioningError,
    ResolutionError,
    Stage,
)
from core.logger import log_event
from core.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    init_static_metrics,
    record_provision_failed,
    record_provision_succeeded,
    record_provision_unreachable,
)
from core.models import MachineRecord, MachineStatus
from core.orchestrator import ProvisioningOrchestrator
from core.registry import MachineRegistry
from core.segments import TENANT_VLANS


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = ProvisioningOrchestrator(ControlPlane(LIBVIRT_URI))
    if getattr(app.state, "registry", None) is None:
        app.state.registry = MachineRegistry()
    if METRICS_ENABLED:
        init_static_metrics()
        log_event("[app] Metrics enabled")
    yield
    app.state.orchestrator.control_plane.close()


app = FastAPI(
    title="Tenant VM Provisioner API",
    description=(
        "Provision short-lived VMs for a fixed set of tenants.\n\n"
        "Features:\n"
        "- One isolated VLAN-backed libvirt network per tenant\n"
        "- Copy-on-write qcow2 disks on a shared base image\n"
        "- cloud-init bootstrap with a generated login password\n"
        "- SSH readiness polling and Prometheus metrics"
    ),
    version="1.0.0",
    lifespan=lifespan,
)


def _orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


def _registry(request: Request) -> MachineRegistry:
    return request.app.state.registry


def _get_record(request: Request, name: str) -> MachineRecord:
    record = _registry(request).get(name)
    if record is None:
        raise HTTPException(status_code=404, detail=f"VM '{name}' not found")
    return record


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


@app.get("/", tags=["System"])
def root():
    return {
        "message": "Tenant VM Provisioner API is running",
        "version": app.version,
    }


@app.get("/tenants", tags=["Tenants"])
def list_tenants(request: Request):
    segments = _orchestrator(request).segments
    return {"tenants": {tenant.value: segments.ip_range(tenant) for tenant in TENANT_VLANS}}


@app.post("/machines", tags=["VM Management"])
def create_machine(request: Request, payload: Dict[str, Any] = Body(...)):
    orchestrator = _orchestrator(request)
    started = time.monotonic()
    try:
        record = orchestrator.provision(payload)
    except ProvisioningError as e:
        record_provision_failed(payload.get("tenant") if e.stage != Stage.VALIDATION else None, e.stage.value)
        if e.stage == Stage.VALIDATION:
            raise HTTPException(
                status_code=422,
                detail={"stage": e.stage.value, **e.cause.context, "message": e.reason},
            )
        status = 409 if isinstance(e.cause, MachineExistsError) else 500
        raise HTTPException(status_code=status, detail={"stage": e.stage.value, "message": e.reason})
    except MachineUnreachableError as e:
        _registry(request).add(e.record)
        record_provision_unreachable(e.record.tenant)
        # started but never confirmed running vs running without an address
        status = "started_unverified" if isinstance(e.cause, MachineNotRunningError) else "running_unreachable"
        return JSONResponse(
            status_code=202,
            content={
                "status": status,
                "message": e.message,
                "vm": e.record.to_dict(),
            },
        )

    _registry(request).add(record)
    record_provision_succeeded(record.tenant, time.monotonic() - started)
    return JSONResponse(status_code=201, content={"status": "created", "vm": record.to_dict()})


@app.get("/machines", tags=["VM Management"])
def list_machines(request: Request):
    """
    Records provisioned by this process, plus every other libvirt domain
    (left over from a restart or defined by hand) with ``managed: false``.
    """
    vms = []
    domain_states: Dict[str, str] = {}
    try:
        domains = _orchestrator(request).list_domains()
    except ControlPlaneError as e:
        log_event(f"[app] Could not list libvirt domains: {e.detail}", logging.WARNING)
        domains = []

    for domain in domains:
        domain_states[domain.name] = domain.state

    records = _registry(request).all()
    for record in records:
        vm = record.to_dict()
        vm["managed"] = True
        vm["domain_state"] = domain_states.get(record.name)
        vms.append(vm)

    known = {record.name for record in records}
    for domain in domains:
        if domain.name in known:
            continue
        vms.append(
            {
                "name": domain.name,
                "status": domain.state,
                "active": domain.active,
                "managed": False,
            }
        )
    return {"vms": vms}


@app.get("/machines/{name}", tags=["VM Management"])
def get_machine(request: Request, name: str):
    return _get_record(request, name).to_dict()


@app.post("/machines/{name}/access", tags=["VM Management"])
def resolve_machine_access(request: Request, name: str):
    record = _get_record(request, name)
    orchestrator = _orchestrator(request)
    try:
        if record.status != MachineStatus.RUNNING:
            orchestrator.refresh(record)
        orchestrator.resolve_access(record)
    except MachineUnreachableError as e:
        status = 409 if isinstance(e.cause, MachineNotRunningError) else 503
        raise HTTPException(status_code=status, detail=e.message)
    except ResolutionError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return record.to_dict()


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
