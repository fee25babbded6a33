import logging
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Union

from config.settings import TENANT_SUBNET_PREFIX
from core.control_plane import ControlPlane
from core.errors import ControlPlaneError, SegmentError
from core.logger import EventSink, log_event
from core.models import NetworkSegment


class Tenant(str, Enum):
    A = "tenant-A"
    B = "tenant-B"
    C = "tenant-C"


# Adding a tenant means adding an enum member and a row here.
TENANT_VLANS: Mapping[Tenant, int] = MappingProxyType(
    {
        Tenant.A: 100,
        Tenant.B: 101,
        Tenant.C: 102,
    }
)

NETMASK = "255.255.255.0"
DHCP_FIRST_HOST = 10
DHCP_LAST_HOST = 100


def to_tenant(tenant: Union[Tenant, str]) -> Tenant:
    """Raises ValueError for anything outside the roster."""
    return tenant if isinstance(tenant, Tenant) else Tenant(tenant)


def vlan_for(tenant: Union[Tenant, str]) -> int:
    return TENANT_VLANS[to_tenant(tenant)]


def network_name_for(tenant: Union[Tenant, str]) -> str:
    return f"vm-network-{vlan_for(tenant)}"


def segment_for(tenant: Union[Tenant, str], prefix: str = TENANT_SUBNET_PREFIX) -> NetworkSegment:
    """Derive the full segment addressing for a tenant; pure and deterministic."""
    member = to_tenant(tenant)
    vlan_id = TENANT_VLANS[member]
    base = f"{prefix}.{vlan_id}"
    return NetworkSegment(
        tenant=member.value,
        vlan_id=vlan_id,
        name=f"vm-network-{vlan_id}",
        bridge=f"virbr{vlan_id}",
        gateway=f"{base}.1",
        netmask=NETMASK,
        subnet=f"{base}.0/24",
        dhcp_start=f"{base}.{DHCP_FIRST_HOST}",
        dhcp_end=f"{base}.{DHCP_LAST_HOST}",
    )


def network_xml(segment: NetworkSegment) -> str:
    """
    libvirt network definition: NAT forwarding, gateway on .1 and a DHCP
    range. Traffic isolation between VLANs is the switch fabric's job.
    """
    return f"""<network>
  <name>{segment.name}</name>
  <bridge name='{segment.bridge}'/>
  <forward mode='nat'/>
  <ip address='{segment.gateway}' netmask='{segment.netmask}'>
    <dhcp>
      <range start='{segment.dhcp_start}' end='{segment.dhcp_end}'/>
    </dhcp>
  </ip>
</network>"""


class SegmentManager:
    """
    Makes sure a tenant's isolated network exists and is active.

    ``ensure`` is idempotent. There is no lock: two requests for the same
    tenant may both try to define the network, so a failed define or start
    is re-checked against the control plane before being reported.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        subnet_prefix: str = TENANT_SUBNET_PREFIX,
        log: EventSink = log_event,
    ) -> None:
        self.control_plane = control_plane
        self.subnet_prefix = subnet_prefix
        self._log = log

    def segment(self, tenant: Union[Tenant, str]) -> NetworkSegment:
        return segment_for(tenant, self.subnet_prefix)

    def ip_range(self, tenant: Union[Tenant, str]) -> Dict[str, object]:
        seg = self.segment(tenant)
        return {
            "network": seg.subnet,
            "gateway": seg.gateway,
            "dhcp_start": seg.dhcp_start,
            "dhcp_end": seg.dhcp_end,
            "vlan_id": seg.vlan_id,
        }

    def exists(self, tenant: Union[Tenant, str]) -> bool:
        return self.control_plane.lookup_network(network_name_for(tenant)) is not None

    def ensure(self, tenant: Union[Tenant, str]) -> NetworkSegment:
        seg = self.segment(tenant)
        network = self.control_plane.lookup_network(seg.name)

        if network is not None:
            if self._is_active(network, seg):
                self._log(f"[segment] Network {seg.name} already active for {seg.tenant}", logging.DEBUG)
                return seg
            self._log(f"[segment] Network {seg.name} is defined but inactive, starting it")
            self._start(network, seg)
            return seg

        self._log(
            f"[segment] Creating network {seg.name} for {seg.tenant} "
            f"(vlan={seg.vlan_id}, subnet={seg.subnet})"
        )
        network = self._define(seg)
        if not self._is_active(network, seg):
            self._start(network, seg)

        self._log(f"[segment] Network {seg.name} created and started")
        return seg

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _is_active(self, network, seg: NetworkSegment) -> bool:
        try:
            return self.control_plane.network_is_active(network)
        except ControlPlaneError as e:
            self._log(f"[segment] Could not query state of {seg.name}: {e}", logging.WARNING)
            return False

    def _define(self, seg: NetworkSegment):
        try:
            return self.control_plane.define_network(network_xml(seg))
        except ControlPlaneError as e:
            # another request may have defined it in the meantime
            network = self.control_plane.lookup_network(seg.name)
            if network is not None:
                self._log(f"[segment] Network {seg.name} was defined concurrently, reusing it")
                return network
            self._log(f"[segment] Failed to define network {seg.name}: {e.detail}", logging.ERROR)
            raise SegmentError(seg.name, "define", e.detail) from e

    def _start(self, network, seg: NetworkSegment) -> None:
        try:
            self.control_plane.start_network(network)
        except ControlPlaneError as e:
            if self._is_active(network, seg):
                self._log(f"[segment] Network {seg.name} was started concurrently")
                return
            self._log(f"[segment] Failed to start network {seg.name}: {e.detail}", logging.ERROR)
            raise SegmentError(seg.name, "start", e.detail) from e
