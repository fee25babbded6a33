import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

from config.settings import (
    DEFAULT_CPU,
    DEFAULT_DISK_GB,
    DEFAULT_MEMORY_MB,
    MAX_CPU,
    MAX_DISK_GB,
    MAX_MEMORY_MB,
    MAX_NAME_LENGTH,
    MIN_CPU,
    MIN_DISK_GB,
    MIN_MEMORY_MB,
)
from core.errors import ValidationFailure
from core.segments import Tenant

NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

# (default, min, max, unit) per numeric field
BOUNDS = {
    "cpu": (DEFAULT_CPU, MIN_CPU, MAX_CPU, "vCPUs"),
    "memory": (DEFAULT_MEMORY_MB, MIN_MEMORY_MB, MAX_MEMORY_MB, "MB"),
    "disk": (DEFAULT_DISK_GB, MIN_DISK_GB, MAX_DISK_GB, "GB"),
}


def _empty(field: str) -> PydanticCustomError:
    return PydanticCustomError(ValidationFailure.EMPTY, f'Parameter "{field}" cannot be empty')


class ProvisioningRequest(BaseModel):
    """
    Normalized request for a new VM.

    Fields are declared in validation order (name, tenant, cpu, memory, disk)
    so the first reported error is always the same for the same input.
    Omitted cpu/memory/disk fall back to the configured defaults.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., description="VM name, also used as guest hostname")
    tenant: Tenant = Field(..., description="Tenant owning the VM (fixed roster)")
    cpu: int = Field(DEFAULT_CPU, description="Number of virtual CPUs")
    memory: int = Field(DEFAULT_MEMORY_MB, description="RAM in MB")
    disk: int = Field(DEFAULT_DISK_GB, description="Disk size in GB")

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: Any) -> str:
        if value is None or value == "":
            raise _empty("name")
        if not isinstance(value, str):
            raise PydanticCustomError(ValidationFailure.WRONG_SHAPE, 'Parameter "name" must be a string')
        if not NAME_PATTERN.fullmatch(value):
            raise PydanticCustomError(
                ValidationFailure.WRONG_SHAPE,
                'Parameter "name" contains invalid characters: "{value}"',
                {"value": value},
            )
        if len(value) > MAX_NAME_LENGTH:
            raise PydanticCustomError(
                ValidationFailure.OUT_OF_RANGE,
                'Parameter "name" is too long ({length} characters). Maximum allowed: {max}',
                {"length": len(value), "max": MAX_NAME_LENGTH},
            )
        return value

    @field_validator("tenant", mode="before")
    @classmethod
    def _check_tenant(cls, value: Any) -> Tenant:
        if value is None or value == "":
            raise _empty("tenant")
        if isinstance(value, Tenant):
            return value
        if not isinstance(value, str):
            raise PydanticCustomError(ValidationFailure.WRONG_SHAPE, 'Parameter "tenant" must be a string')
        try:
            return Tenant(value)
        except ValueError:
            raise PydanticCustomError(
                ValidationFailure.UNKNOWN_TENANT,
                'Invalid tenant "{value}". Must be one of: {valid}',
                {"value": value, "valid": ", ".join(t.value for t in Tenant)},
            ) from None

    @field_validator("cpu", "memory", "disk", mode="before")
    @classmethod
    def _check_bounds(cls, value: Any, info: ValidationInfo) -> int:
        default, low, high, unit = BOUNDS[info.field_name]
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            raise PydanticCustomError(
                ValidationFailure.WRONG_SHAPE,
                'Parameter "{field}" must be an integer',
                {"field": info.field_name},
            )
        if value < low or value > high:
            raise PydanticCustomError(
                ValidationFailure.OUT_OF_RANGE,
                'Invalid {field} {value} {unit}. Must be between {low} and {high}',
                {"field": info.field_name, "value": value, "unit": unit, "low": low, "high": high},
            )
        return value
