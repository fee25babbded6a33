from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from config.settings import VM_SSH_USERNAME


class MachineStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    SHUTOFF = "shutoff"
    UNKNOWN = "unknown"


# libvirt domain states, see virDomainState
DOMAIN_STATES = {
    0: "nostate",
    1: "running",
    2: "blocked",
    3: "paused",
    4: "shutdown",
    5: "shutoff",
    6: "crashed",
    7: "pmsuspended",
}


@dataclass
class MachineRecord:
    """
    Everything the caller gets back about one provisioned VM.

    Created once the request is validated; the orchestrator owns ``status``
    and the access resolver fills in ``address``/``password``/``ready``.
    """

    name: str
    tenant: str
    vlan_id: int
    cpu: int
    memory: int
    disk: int
    status: MachineStatus = MachineStatus.CREATING
    address: str = ""
    username: str = VM_SSH_USERNAME
    password: str = ""
    ready: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tenant": self.tenant,
            "vlan_id": self.vlan_id,
            "cpu": self.cpu,
            "memory": self.memory,
            "disk": self.disk,
            "status": self.status.value,
            "access": {
                "address": self.address,
                "username": self.username,
                "password": self.password,
                "ready": self.ready,
            },
            "created_at": self.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        }


@dataclass(frozen=True)
class NetworkSegment:
    tenant: str
    vlan_id: int
    name: str
    bridge: str
    gateway: str
    netmask: str
    subnet: str
    dhcp_start: str
    dhcp_end: str


@dataclass(frozen=True)
class StorageVolume:
    name: str
    path: str
    capacity_bytes: int
    backing_image: Optional[str] = None


@dataclass(frozen=True)
class BootstrapConfig:
    hostname: str
    username: str
    password: str
    user_data: str
    meta_data: str


@dataclass(frozen=True)
class MachineDescriptor:
    name: str
    uuid: str
    mac_address: str
    network_name: str
    memory_kib: int
    xml: str


@dataclass(frozen=True)
class AccessInfo:
    address: str
    username: str
    password: str
    ready: bool


@dataclass(frozen=True)
class DomainInfo:
    state: str
    cpu_count: int
    memory_kib: int


@dataclass(frozen=True)
class DhcpLease:
    hostname: str
    address: str


@dataclass(frozen=True)
class InterfaceAddress:
    address: str
    family: str


@dataclass(frozen=True)
class DomainSummary:
    name: str
    state: str
    active: bool
