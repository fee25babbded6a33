from typing import Any, Mapping

from pydantic import ValidationError

from core.errors import ValidationFailure
from schemas.machine_schema import ProvisioningRequest

FIELDS = ("name", "tenant", "cpu", "memory", "disk")


def validate_request(raw: Mapping[str, Any]) -> ProvisioningRequest:
    """
    Normalize raw request fields into a ProvisioningRequest.

    Pure: no I/O, no logging. Raises ValidationFailure for the first
    violated rule in the order name, tenant, cpu, memory, disk.
    """
    if not isinstance(raw, Mapping):
        raise ValidationFailure("request", ValidationFailure.WRONG_SHAPE, "Request must be a mapping of fields")

    data = {key: raw.get(key) for key in FIELDS}
    try:
        return ProvisioningRequest.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else "request"
        raise ValidationFailure(field, first["type"], first["msg"]) from None
