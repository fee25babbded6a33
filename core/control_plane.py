from typing import Any, List, Optional

from config.settings import LIBVIRT_URI
from core.errors import ControlPlaneError
from core.logger import EventSink, log_event
from core.models import DOMAIN_STATES, DhcpLease, DomainInfo, DomainSummary, InterfaceAddress

# libvirt is only needed on the hypervisor host
try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    libvirt = None
    LIBVIRT_AVAILABLE = False


# virIPAddrType
_ADDRESS_FAMILIES = {0: "ipv4", 1: "ipv6"}


def _libvirt_error_handler(ctx, error):
    """
    Suppress libvirt's own stderr output such as
    'Network not found: no network with matching name ...'; the errors are
    still raised as libvirtError and reported through the event log.
    """
    pass


class ControlPlane:
    """
    Narrow wrapper around a libvirt connection.

    Each verb either returns a plain value or raises ``ControlPlaneError``
    naming the verb, so callers never see ``libvirtError`` or ``None``
    sentinels. Handles returned by ``define_*``/``lookup_*`` are opaque and
    only meant to be passed back into this class.
    """

    def __init__(self, uri: str = LIBVIRT_URI, log: EventSink = log_event) -> None:
        self.uri = uri
        self.conn: Any = None
        self._log = log

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def is_connected(self) -> bool:
        return self.conn is not None

    def connect(self) -> None:
        if self.is_connected():
            return
        if not LIBVIRT_AVAILABLE:
            raise ControlPlaneError("connect", "libvirt python bindings are not installed")

        libvirt.registerErrorHandler(_libvirt_error_handler, None)
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            raise ControlPlaneError("connect", f"{self.uri}: {e}") from e
        if conn is None:
            raise ControlPlaneError("connect", f"no connection returned for {self.uri}")

        self.conn = conn
        self._log(f"[libvirt] Connected to hypervisor via libvirt URI={self.uri}")

    def close(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.close()
        except libvirt.libvirtError as e:
            self._log(f"[libvirt] Error while closing connection: {e}")
        finally:
            self.conn = None

    def _connection(self, verb: str) -> Any:
        if self.conn is None:
            raise ControlPlaneError(verb, "not connected to libvirt")
        return self.conn

    def _call(self, verb: str, fn, *args):
        self._connection(verb)
        try:
            result = fn(*args)
        except libvirt.libvirtError as e:
            raise ControlPlaneError(verb, str(e)) from e
        return result

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------
    def lookup_network(self, name: str) -> Optional[Any]:
        """Return the network handle or None when no such network is defined."""
        conn = self._connection("lookup-network")
        try:
            return conn.networkLookupByName(name)
        except libvirt.libvirtError:
            return None

    def network_is_active(self, network: Any) -> bool:
        return bool(self._call("network-is-active", network.isActive))

    def define_network(self, xml: str) -> Any:
        network = self._call("define-network", self._connection("define-network").networkDefineXML, xml)
        if network is None:
            raise ControlPlaneError("define-network", "libvirt returned no network")
        return network

    def start_network(self, network: Any) -> None:
        self._call("start-network", network.create)

    def get_dhcp_leases(self, network: Any) -> List[DhcpLease]:
        leases = self._call("get-dhcp-leases", network.DHCPLeases) or []
        return [
            DhcpLease(hostname=lease.get("hostname") or "", address=lease.get("ipaddr") or "")
            for lease in leases
        ]

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------
    def lookup_domain(self, name: str) -> Any:
        return self._call("lookup-domain-by-name", self._connection("lookup-domain-by-name").lookupByName, name)

    def domain_exists(self, name: str) -> bool:
        try:
            self.lookup_domain(name)
            return True
        except ControlPlaneError:
            return False

    def list_domains(self) -> List[DomainSummary]:
        """Every defined domain, running or not (``virsh list --all``)."""
        domains = self._call("list-domains", self._connection("list-domains").listAllDomains, 0) or []
        summaries: List[DomainSummary] = []
        for dom in domains:
            try:
                info = dom.info()
                summaries.append(
                    DomainSummary(
                        name=dom.name(),
                        state=DOMAIN_STATES.get(info[0], "unknown"),
                        active=bool(dom.isActive()),
                    )
                )
            except libvirt.libvirtError as e:
                # domain vanished between listing and querying it
                self._log(f"[libvirt] Skipping domain while listing: {e}")
                continue
        return summaries

    def define_domain(self, xml: str) -> Any:
        domain = self._call("define-domain", self._connection("define-domain").defineXML, xml)
        if domain is None:
            raise ControlPlaneError("define-domain", "libvirt returned no domain")
        return domain

    def start_domain(self, domain: Any) -> None:
        self._call("start-domain", domain.create)

    def get_domain_info(self, domain: Any) -> DomainInfo:
        info = self._call("get-domain-info", domain.info)
        if not info:
            raise ControlPlaneError("get-domain-info", "libvirt returned no info")
        # [state, maxMem KiB, memory KiB, nrVirtCpu, cpuTime]
        return DomainInfo(
            state=DOMAIN_STATES.get(info[0], "unknown"),
            cpu_count=info[3],
            memory_kib=info[1],
        )

    def get_interface_addresses(self, domain: Any) -> List[InterfaceAddress]:
        interfaces = self._call(
            "get-interface-addresses",
            domain.interfaceAddresses,
            libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE,
        ) or {}

        addresses: List[InterfaceAddress] = []
        for iface in interfaces.values():
            for addr in iface.get("addrs") or []:
                addresses.append(
                    InterfaceAddress(
                        address=addr.get("addr", ""),
                        family=_ADDRESS_FAMILIES.get(addr.get("type"), "unknown"),
                    )
                )
        return addresses
