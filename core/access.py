import asyncio
import logging
import socket
import time
from typing import Callable, Optional

import asyncssh

from config.settings import (
    PASSWORD_LENGTH,
    SSH_CONNECT_TIMEOUT,
    SSH_READY_INTERVAL,
    SSH_READY_TIMEOUT,
    VM_SSH_PORT,
)
from core.bootstrap import generate_password
from core.control_plane import ControlPlane
from core.errors import ControlPlaneError, MachineNotRunningError, ResolutionError
from core.logger import EventSink, log_event
from core.models import AccessInfo, MachineRecord, MachineStatus
from core.segments import network_name_for


class SSHProbe:
    """
    One readiness attempt against a guest's SSH service: a plain TCP connect,
    then an SSH handshake without credentials.

    A failed TCP connect means "not yet", and so does a connection the peer
    closes before the SSH exchange completes. Any answer from the SSH server,
    including an authentication rejection, means the service is up.
    """

    def __init__(self, port: int = VM_SSH_PORT, connect_timeout: float = SSH_CONNECT_TIMEOUT) -> None:
        self.port = port
        self.connect_timeout = connect_timeout

    def check(self, address: str, username: str) -> bool:
        try:
            with socket.create_connection((address, self.port), timeout=self.connect_timeout):
                pass
        except OSError:
            return False
        return asyncio.run(self._handshake(address, username))

    async def _handshake(self, address: str, username: str) -> bool:
        try:
            async with asyncssh.connect(
                address,
                port=self.port,
                username=username,
                known_hosts=None,
                client_keys=None,
                agent_path=None,
                connect_timeout=self.connect_timeout,
            ):
                return True
        except (OSError, asyncio.TimeoutError):
            return False
        except asyncssh.ConnectionLost:
            # peer closed before completing the SSH exchange
            return False
        except asyncssh.Error:
            # an auth rejection or protocol error means sshd is up
            return True


class AccessResolver:
    """
    Finds where a running machine can be reached and waits for SSH.

    Address sources, in order: the tenant network's DHCP leases matched by
    hostname, then the domain's interface addresses (first IPv4). A timed out
    readiness wait is not an error: the result comes back with ready=False.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        probe: Optional[SSHProbe] = None,
        timeout: float = SSH_READY_TIMEOUT,
        interval: float = SSH_READY_INTERVAL,
        password_length: int = PASSWORD_LENGTH,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        log: EventSink = log_event,
    ) -> None:
        self.control_plane = control_plane
        self.probe = probe or SSHProbe()
        self.timeout = timeout
        self.interval = interval
        self.password_length = password_length
        self._sleep = sleep
        self._clock = clock
        self._log = log

    def resolve(self, record: MachineRecord) -> AccessInfo:
        if record.status != MachineStatus.RUNNING:
            raise MachineNotRunningError(record.name, record.status.value)

        address = self.discover_address(record)

        if not record.password:
            record.password = generate_password(self.password_length)
        record.address = address

        record.ready = self.wait_until_ready(address, record.username)
        if not record.ready:
            self._log(f"[access] SSH not ready yet for VM {record.name} at {address}", logging.WARNING)

        self._log(f"[access] VM {record.name} reachable at {address} (ready={record.ready})")
        return AccessInfo(
            address=address,
            username=record.username,
            password=record.password,
            ready=record.ready,
        )

    def discover_address(self, record: MachineRecord) -> str:
        address = self._address_from_leases(record)
        if address:
            self._log(f"[access] Found IP {address} for VM {record.name} in DHCP leases")
            return address

        address = self._address_from_interfaces(record)
        if address:
            self._log(f"[access] Found IP {address} for VM {record.name} from domain interfaces")
            return address

        self._log(f"[access] No IP address found for VM {record.name}", logging.ERROR)
        raise ResolutionError(f"No IP address found for VM '{record.name}'", vm_name=record.name)

    def wait_until_ready(self, address: str, username: str) -> bool:
        self._log(f"[access] Waiting up to {self.timeout}s for SSH on {address}")
        start = self._clock()
        while self._clock() - start < self.timeout:
            if self.probe.check(address, username):
                self._log(f"[access] SSH service is responding on {address}")
                return True
            self._log(
                f"[access] SSH not ready on {address}, retrying "
                f"(elapsed={self._clock() - start:.0f}s)",
                logging.DEBUG,
            )
            self._sleep(self.interval)

        self._log(f"[access] SSH readiness check timed out for {address} after {self.timeout}s", logging.WARNING)
        return False

    # ------------------------------------------------------------------
    # Address sources
    # ------------------------------------------------------------------
    def _address_from_leases(self, record: MachineRecord) -> str:
        name = network_name_for(record.tenant)
        try:
            network = self.control_plane.lookup_network(name)
            if network is None:
                self._log(f"[access] Network {name} not found, skipping DHCP leases", logging.WARNING)
                return ""
            leases = self.control_plane.get_dhcp_leases(network)
        except ControlPlaneError as e:
            self._log(f"[access] Failed to read DHCP leases of {name}: {e.detail}", logging.WARNING)
            return ""

        for lease in leases:
            if lease.hostname == record.name and lease.address:
                return lease.address
        return ""

    def _address_from_interfaces(self, record: MachineRecord) -> str:
        try:
            domain = self.control_plane.lookup_domain(record.name)
            addresses = self.control_plane.get_interface_addresses(domain)
        except ControlPlaneError as e:
            self._log(f"[access] Failed to get interfaces of VM {record.name}: {e.detail}", logging.ERROR)
            return ""

        for addr in addresses:
            if addr.family == "ipv4" and addr.address:
                return addr.address
        return ""
