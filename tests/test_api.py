import pytest
from fastapi.testclient import TestClient

from conftest import FakeDomain
from core.models import DhcpLease
from core.registry import MachineRegistry
from main import app

ALPHA = {"name": "alpha-1", "tenant": "tenant-A", "cpu": 2, "memory": 2048, "disk": 20}


@pytest.fixture
def client(monkeypatch, make_orchestrator, commands):
    # lifespan is not run without the context manager, so state is injected here
    monkeypatch.setattr(app.state, "orchestrator", make_orchestrator(), raising=False)
    monkeypatch.setattr(app.state, "registry", MachineRegistry(), raising=False)
    return TestClient(app)


@pytest.fixture
def leased(control_plane):
    control_plane.leases["vm-network-100"] = [DhcpLease("alpha-1", "192.168.100.23")]
    return control_plane


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert "running" in resp.json()["message"]


def test_tenants(client):
    tenants = client.get("/tenants").json()["tenants"]
    assert set(tenants) == {"tenant-A", "tenant-B", "tenant-C"}
    assert tenants["tenant-B"]["network"] == "192.168.101.0/24"
    assert tenants["tenant-B"]["vlan_id"] == 101


def test_create_machine(client, leased):
    resp = client.post("/machines", json=ALPHA)
    assert resp.status_code == 201

    vm = resp.json()["vm"]
    assert vm["status"] == "running"
    assert vm["vlan_id"] == 100
    assert vm["access"]["address"] == "192.168.100.23"
    assert vm["access"]["username"] == "ubuntu"
    assert vm["access"]["ready"] is True

    assert client.get("/machines/alpha-1").json()["name"] == "alpha-1"
    assert [m["name"] for m in client.get("/machines").json()["vms"]] == ["alpha-1"]


def test_validation_error(client, control_plane):
    resp = client.post("/machines", json={**ALPHA, "memory": 100})
    assert resp.status_code == 422

    detail = resp.json()["detail"]
    assert detail["stage"] == "validation"
    assert detail["field"] == "memory"
    assert detail["reason"] == "out_of_range"
    assert control_plane.calls == []


def test_duplicate_machine(client, leased):
    assert client.post("/machines", json=ALPHA).status_code == 201
    resp = client.post("/machines", json=ALPHA)

    assert resp.status_code == 409
    assert resp.json()["detail"]["stage"] == "registration"


def test_stage_failure(client, control_plane):
    control_plane.fail["start-domain"] = "not enough memory"
    resp = client.post("/machines", json=ALPHA)

    assert resp.status_code == 500
    assert resp.json()["detail"]["stage"] == "start"
    assert "not enough memory" in resp.json()["detail"]["message"]


def test_running_but_unreachable(client, control_plane):
    resp = client.post("/machines", json=ALPHA)

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "running_unreachable"
    assert body["vm"]["status"] == "running"
    assert body["vm"]["access"]["password"]
    assert client.get("/machines/alpha-1").status_code == 200


def test_resolve_access_later(client, control_plane):
    client.post("/machines", json=ALPHA)
    control_plane.leases["vm-network-100"] = [DhcpLease("alpha-1", "192.168.100.23")]

    resp = client.post("/machines/alpha-1/access")
    assert resp.status_code == 200
    assert resp.json()["access"]["address"] == "192.168.100.23"


def test_resolve_access_still_unreachable(client, control_plane):
    client.post("/machines", json=ALPHA)
    resp = client.post("/machines/alpha-1/access")
    assert resp.status_code == 503


def test_resolve_access_not_running(client, control_plane):
    control_plane.domain_state = "shutoff"
    client.post("/machines", json=ALPHA)

    resp = client.post("/machines/alpha-1/access")
    assert resp.status_code == 409


def test_unknown_machine(client):
    assert client.get("/machines/nope").status_code == 404
    assert client.post("/machines/nope/access").status_code == 404


def test_metrics(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "vm_provisioner_requests_total" in resp.text


def test_started_but_not_confirmed_running(client, control_plane):
    control_plane.domain_state = "shutoff"
    resp = client.post("/machines", json=ALPHA)

    assert resp.status_code == 202
    assert resp.json()["status"] == "started_unverified"
    assert resp.json()["vm"]["status"] == "shutoff"


def test_list_includes_domains_not_created_here(client, control_plane, leased):
    client.post("/machines", json=ALPHA)
    control_plane.domains["leftover"] = FakeDomain("leftover", "<domain/>")

    vms = {vm["name"]: vm for vm in client.get("/machines").json()["vms"]}

    assert vms["alpha-1"]["managed"] is True
    assert vms["alpha-1"]["domain_state"] == "running"
    assert vms["leftover"] == {"name": "leftover", "status": "shutoff", "active": False, "managed": False}


def test_list_survives_control_plane_outage(client, control_plane, leased):
    client.post("/machines", json=ALPHA)
    control_plane.fail["list-domains"] = "connection reset"

    resp = client.get("/machines")
    assert resp.status_code == 200
    assert [vm["name"] for vm in resp.json()["vms"]] == ["alpha-1"]
