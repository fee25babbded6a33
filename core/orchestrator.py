import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional

from core.access import AccessResolver
from core.bootstrap import BootstrapGenerator
from core.control_plane import ControlPlane
from core.descriptor import DescriptorBuilder
from core.errors import (
    BootstrapError,
    ControlPlaneError,
    DescriptorError,
    MachineExistsError,
    MachineUnreachableError,
    ProvisioningError,
    ResolutionError,
    SegmentError,
    Stage,
    StorageError,
    ValidationFailure,
)
from core.logger import EventSink, log_event
from core.metrics import record_segment_ensured, record_ssh_wait
from core.models import (
    DomainSummary,
    MachineDescriptor,
    MachineRecord,
    MachineStatus,
    NetworkSegment,
    StorageVolume,
)
from core.segments import SegmentManager, vlan_for
from core.storage import StorageProvisioner
from core.validator import validate_request
from schemas.machine_schema import ProvisioningRequest


class ProvisioningState(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    NETWORK_READY = "network_ready"
    STORAGE_READY = "storage_ready"
    BOOTSTRAP_READY = "bootstrap_ready"
    REGISTERED = "registered"
    STARTED = "started"
    VERIFIED = "verified"
    RUNNING = "running"
    FAILED = "failed"


_STATUS_BY_DOMAIN_STATE = {
    "running": MachineStatus.RUNNING,
    "shutoff": MachineStatus.SHUTOFF,
}


@dataclass
class ProvisioningRun:
    """Progress of one provisioning workflow; also attached to failures."""

    request: Optional[ProvisioningRequest] = None
    record: Optional[MachineRecord] = None
    state: ProvisioningState = ProvisioningState.CREATED
    history: List[ProvisioningState] = field(default_factory=lambda: [ProvisioningState.CREATED])
    segment: Optional[NetworkSegment] = None
    volume: Optional[StorageVolume] = None
    bootstrap_iso: Optional[Path] = None
    descriptor: Optional[MachineDescriptor] = None
    domain: Any = None
    verified: bool = False
    failed_stage: Optional[Stage] = None


class ProvisioningOrchestrator:
    """
    Drives a VM from raw request to running machine with access details.

    Stages run strictly in order and each external call is attempted once.
    On failure the workflow stops and raises ProvisioningError naming the
    stage; the segment, disk and cloud-init ISO created so far are left in
    place for the operator to clean up.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        segments: Optional[SegmentManager] = None,
        storage: Optional[StorageProvisioner] = None,
        bootstrap: Optional[BootstrapGenerator] = None,
        descriptors: Optional[DescriptorBuilder] = None,
        resolver: Optional[AccessResolver] = None,
        log: EventSink = log_event,
    ) -> None:
        self.control_plane = control_plane
        self.segments = segments or SegmentManager(control_plane, log=log)
        self.storage = storage or StorageProvisioner(log=log)
        self.bootstrap = bootstrap or BootstrapGenerator(log=log)
        self.descriptors = descriptors or DescriptorBuilder(log=log)
        self.resolver = resolver or AccessResolver(control_plane, log=log)
        self._log = log

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def provision(self, raw: Mapping[str, Any]) -> MachineRecord:
        """
        Full workflow: create and start the machine, then resolve access.

        Raises ProvisioningError when the machine could not be created or
        started, and MachineUnreachableError when it was started but its
        address or SSH readiness could not be determined.
        """
        run = self.start(raw)
        record = run.record
        self.resolve_access(record)
        return record

    def start(self, raw: Mapping[str, Any]) -> ProvisioningRun:
        """Run every stage up to and including state verification."""
        run = ProvisioningRun()

        try:
            run.request = validate_request(raw)
        except ValidationFailure as e:
            self._fail(run, Stage.VALIDATION, e)
        request = run.request

        run.record = MachineRecord(
            name=request.name,
            tenant=request.tenant.value,
            vlan_id=vlan_for(request.tenant),
            cpu=request.cpu,
            memory=request.memory,
            disk=request.disk,
        )
        self._advance(run, ProvisioningState.VALIDATED)
        self._log(
            f"[provision] VM {request.name} requested (tenant={request.tenant.value}, "
            f"vlan={run.record.vlan_id}, cpu={request.cpu}, memory={request.memory}MB, "
            f"disk={request.disk}GB)"
        )

        try:
            self.control_plane.connect()
        except ControlPlaneError as e:
            self._fail(run, Stage.CONNECTION, e)

        if self.control_plane.domain_exists(request.name):
            self._fail(run, Stage.REGISTRATION, MachineExistsError(request.name))

        try:
            run.segment = self.segments.ensure(request.tenant)
            record_segment_ensured(request.tenant.value)
        except (SegmentError, ControlPlaneError) as e:
            self._fail(run, Stage.NETWORK, e)
        self._advance(run, ProvisioningState.NETWORK_READY)

        try:
            run.volume = self.storage.provision(request.name, request.disk)
        except StorageError as e:
            self._fail(run, Stage.STORAGE, e)
        self._advance(run, ProvisioningState.STORAGE_READY)

        try:
            config, run.bootstrap_iso = self.bootstrap.generate(request.name)
        except BootstrapError as e:
            self._fail(run, Stage.BOOTSTRAP, e)
        run.record.username = config.username
        run.record.password = config.password
        self._advance(run, ProvisioningState.BOOTSTRAP_READY)

        try:
            run.descriptor = self.descriptors.build(run.record, run.volume.path, str(run.bootstrap_iso))
        except DescriptorError as e:
            self._log(f"[provision] Internal consistency fault for VM {request.name}: {e}", logging.ERROR)
            self._fail(run, Stage.DESCRIPTOR, e)

        try:
            run.domain = self.control_plane.define_domain(run.descriptor.xml)
        except ControlPlaneError as e:
            self._fail(run, Stage.REGISTRATION, e)
        self._advance(run, ProvisioningState.REGISTERED)

        try:
            self.control_plane.start_domain(run.domain)
        except ControlPlaneError as e:
            self._fail(run, Stage.START, e)
        self._advance(run, ProvisioningState.STARTED)

        self._verify(run)
        return run

    def list_domains(self) -> List[DomainSummary]:
        """All domains libvirt knows about, including ones this process never created."""
        self.control_plane.connect()
        return self.control_plane.list_domains()

    def refresh(self, record: MachineRecord) -> MachineRecord:
        """Re-read the domain state from libvirt and update ``record.status``."""
        try:
            self.control_plane.connect()
            domain = self.control_plane.lookup_domain(record.name)
            info = self.control_plane.get_domain_info(domain)
        except ControlPlaneError as e:
            raise ResolutionError(f"Could not query state of VM '{record.name}': {e.detail}") from e

        record.status = _STATUS_BY_DOMAIN_STATE.get(info.state, MachineStatus.UNKNOWN)
        self._log(f"[provision] VM {record.name} refreshed: state={info.state}")
        return record

    def resolve_access(self, record: MachineRecord) -> MachineRecord:
        started = time.monotonic()
        try:
            self.resolver.resolve(record)
        except ResolutionError as e:
            self._log(f"[provision] VM {record.name} is running but unreachable: {e}", logging.ERROR)
            raise MachineUnreachableError(record, e) from e
        finally:
            record_ssh_wait(time.monotonic() - started)
        return record

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _verify(self, run: ProvisioningRun) -> None:
        record = run.record
        try:
            info = self.control_plane.get_domain_info(run.domain)
        except ControlPlaneError as e:
            # start succeeded, so this is not fatal
            record.status = MachineStatus.UNKNOWN
            self._log(f"[provision] VM {record.name} started but state unverified: {e.detail}", logging.WARNING)
            return

        run.verified = True
        self._advance(run, ProvisioningState.VERIFIED)
        record.status = _STATUS_BY_DOMAIN_STATE.get(info.state, MachineStatus.UNKNOWN)

        if record.status == MachineStatus.RUNNING:
            self._advance(run, ProvisioningState.RUNNING)
            self._log(
                f"[provision] VM {record.name} running (vcpus={info.cpu_count}, "
                f"memory={info.memory_kib}KiB, tenant={record.tenant})"
            )
        else:
            self._log(f"[provision] VM {record.name} started but reports state={info.state}", logging.WARNING)

    def _advance(self, run: ProvisioningRun, state: ProvisioningState) -> None:
        name = run.record.name if run.record else "?"
        self._log(f"[provision] VM {name}: {run.state.value} -> {state.value}", logging.DEBUG)
        run.state = state
        run.history.append(state)

    def _fail(self, run: ProvisioningRun, stage: Stage, cause: Exception) -> None:
        reason = getattr(cause, "message", None) or str(cause)
        name = run.record.name if run.record else "?"
        run.failed_stage = stage
        self._advance(run, ProvisioningState.FAILED)
        self._log(f"[provision] VM {name} FAILED at {stage.value}: {reason}", logging.ERROR)
        raise ProvisioningError(stage, reason, cause=cause, run=run) from cause
