from __future__ import annotations

import logging
import subprocess
import xml.etree.ElementTree as ET

import pytest

from core.access import AccessResolver
from core.bootstrap import BootstrapGenerator
from core.descriptor import DescriptorBuilder
from core.errors import ControlPlaneError
from core.models import DhcpLease, DomainInfo, DomainSummary, InterfaceAddress
from core.orchestrator import ProvisioningOrchestrator
from core.segments import SegmentManager
from core.storage import StorageProvisioner


class EventRecorder:
    """Event sink that keeps (level, message) pairs."""

    def __init__(self):
        self.events: list[tuple[int, str]] = []

    def __call__(self, message, level=logging.INFO):
        self.events.append((level, message))

    def messages(self, level=None):
        return [m for lvl, m in self.events if level is None or lvl == level]


class FakeNetwork:
    def __init__(self, name, xml, active=False):
        self.name = name
        self.xml = xml
        self.active = active


class FakeDomain:
    def __init__(self, name, xml):
        self.name = name
        self.xml = xml
        self.started = False


class FakeControlPlane:
    """
    In-memory stand-in for core.control_plane.ControlPlane.

    ``calls`` records every verb in order; ``fail`` maps a verb name to an
    error detail that makes that verb raise ControlPlaneError.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.fail: dict[str, str] = {}
        self.networks: dict[str, FakeNetwork] = {}
        self.domains: dict[str, FakeDomain] = {}
        self.leases: dict[str, list[DhcpLease]] = {}
        self.interfaces: dict[str, list[InterfaceAddress]] = {}
        self.domain_state = "running"
        self.connected = False

    def _verb(self, verb):
        self.calls.append(verb)
        if verb in self.fail:
            raise ControlPlaneError(verb, self.fail[verb])

    def count(self, verb):
        return self.calls.count(verb)

    def connect(self):
        self._verb("connect")
        self.connected = True

    def close(self):
        self.connected = False

    def lookup_network(self, name):
        self._verb("lookup-network")
        return self.networks.get(name)

    def network_is_active(self, network):
        self._verb("network-is-active")
        return network.active

    def define_network(self, xml):
        self._verb("define-network")
        name = ET.fromstring(xml).findtext("name")
        network = FakeNetwork(name, xml)
        self.networks[name] = network
        return network

    def start_network(self, network):
        self._verb("start-network")
        network.active = True

    def get_dhcp_leases(self, network):
        self._verb("get-dhcp-leases")
        return list(self.leases.get(network.name, []))

    def lookup_domain(self, name):
        self._verb("lookup-domain-by-name")
        if name not in self.domains:
            raise ControlPlaneError("lookup-domain-by-name", f"Domain not found: {name}")
        return self.domains[name]

    def domain_exists(self, name):
        self._verb("domain-exists")
        return name in self.domains

    def list_domains(self):
        self._verb("list-domains")
        return [
            DomainSummary(
                name=domain.name,
                state=self.domain_state if domain.started else "shutoff",
                active=domain.started,
            )
            for domain in self.domains.values()
        ]

    def define_domain(self, xml):
        self._verb("define-domain")
        name = ET.fromstring(xml).findtext("name")
        domain = FakeDomain(name, xml)
        self.domains[name] = domain
        return domain

    def start_domain(self, domain):
        self._verb("start-domain")
        domain.started = True

    def get_domain_info(self, domain):
        self._verb("get-domain-info")
        root = ET.fromstring(domain.xml)
        return DomainInfo(
            state=self.domain_state,
            cpu_count=int(root.findtext("vcpu")),
            memory_kib=int(root.findtext("memory")),
        )

    def get_interface_addresses(self, domain):
        self._verb("get-interface-addresses")
        return list(self.interfaces.get(domain.name, []))


class FakeProbe:
    """Readiness probe returning queued answers, then ``default``."""

    def __init__(self, answers=(), default=True):
        self.answers = list(answers)
        self.default = default
        self.calls: list[tuple[str, str]] = []

    def check(self, address, username):
        self.calls.append((address, username))
        if self.answers:
            return self.answers.pop(0)
        return self.default


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def control_plane():
    return FakeControlPlane()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def commands(monkeypatch):
    """Capture subprocess.run calls made by storage/bootstrap and succeed."""
    captured: list[list[str]] = []

    def fake_run(cmd, *args, **kwargs):
        captured.append(list(cmd))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    return captured


@pytest.fixture
def base_image(tmp_path):
    path = tmp_path / "base.qcow2"
    path.write_bytes(b"QFI\xfb")
    return path


@pytest.fixture
def make_orchestrator(tmp_path, control_plane, probe, clock, events, base_image):
    def factory(**overrides):
        parts = {
            "segments": SegmentManager(control_plane, log=events),
            "storage": StorageProvisioner(
                image_root=tmp_path / "images",
                base_image=base_image,
                log=events,
            ),
            "bootstrap": BootstrapGenerator(output_dir=tmp_path / "cloud-init", log=events),
            "descriptors": DescriptorBuilder(log=events),
            "resolver": AccessResolver(
                control_plane,
                probe=probe,
                timeout=60,
                interval=2,
                sleep=clock.sleep,
                clock=clock,
                log=events,
            ),
        }
        parts.update(overrides)
        return ProvisioningOrchestrator(control_plane, log=events, **parts)

    return factory
