"""
Error taxonomy for the provisioning workflow.

Every component raises one of these; libvirt and subprocess errors are
translated at the component boundary so the orchestrator only ever has to
deal with ``ProvisionerError`` subclasses.
"""

from enum import Enum
from typing import Any, Dict, Optional


class Stage(str, Enum):
    """Workflow stage a failure is attributed to."""

    VALIDATION = "validation"
    CONNECTION = "connection"
    NETWORK = "network"
    STORAGE = "storage"
    BOOTSTRAP = "bootstrap"
    DESCRIPTOR = "descriptor"
    REGISTRATION = "registration"
    START = "start"
    VERIFICATION = "verification"
    RESOLUTION = "resolution"


class ProvisionerError(Exception):
    """Base class, carries a context dict for logging and API responses."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class ValidationFailure(ProvisionerError):
    """A request field is empty, malformed, out of range or names an unknown tenant."""

    EMPTY = "empty"
    WRONG_SHAPE = "wrong_shape"
    OUT_OF_RANGE = "out_of_range"
    UNKNOWN_TENANT = "unknown_tenant"

    def __init__(self, field: str, reason: str, message: str) -> None:
        super().__init__(message, field=field, reason=reason)
        self.field = field
        self.reason = reason


class ControlPlaneError(ProvisionerError):
    """A libvirt verb failed or returned nothing."""

    def __init__(self, verb: str, detail: str) -> None:
        super().__init__(f"{verb} failed: {detail}", verb=verb, detail=detail)
        self.verb = verb
        self.detail = detail


class SegmentError(ProvisionerError):
    """Tenant network could not be defined or started; ``step`` says which."""

    def __init__(self, network_name: str, step: str, detail: str) -> None:
        super().__init__(
            f"Failed to {step} network '{network_name}': {detail}",
            network_name=network_name,
            step=step,
        )
        self.network_name = network_name
        self.step = step


class StorageError(ProvisionerError):
    def __init__(
        self,
        path: str,
        detail: str,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(
            f"Failed to create disk image '{path}': {detail}",
            path=path,
            returncode=returncode,
        )
        self.path = path
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class MachineExistsError(ProvisionerError):
    def __init__(self, name: str) -> None:
        super().__init__(f"VM '{name}' already exists", vm_name=name)
        self.name = name


class BootstrapError(ProvisionerError):
    pass


class DescriptorError(ProvisionerError):
    pass


class ProvisioningError(ProvisionerError):
    """The workflow stopped at ``stage``; created resources are left in place."""

    def __init__(
        self,
        stage: Stage,
        reason: str,
        cause: Optional[Exception] = None,
        run: Any = None,
    ) -> None:
        super().__init__(f"Provisioning failed at {stage.value}: {reason}", stage=stage.value)
        self.stage = stage
        self.reason = reason
        self.cause = cause
        self.run = run


class ResolutionError(ProvisionerError):
    """Address or readiness of a started machine could not be determined."""


class MachineNotRunningError(ResolutionError):
    """Machine is not confirmed running yet; retry after a delay."""

    def __init__(self, name: str, status: str) -> None:
        super().__init__(f"VM '{name}' is not running (status={status})", vm_name=name, status=status)
        self.name = name
        self.status = status


class MachineUnreachableError(ProvisionerError):
    """The machine was started but access could not be resolved."""

    def __init__(self, record: Any, cause: ResolutionError) -> None:
        super().__init__(
            f"VM '{record.name}' is running but unreachable: {cause.message}",
            vm_name=record.name,
        )
        self.record = record
        self.cause = cause
