"""
Organization isolation checks applied before cross-record writes.
"""
import uuid
from typing import Optional, Union

from apex.services.handler_errors import TenancyViolation


def parse_organization_id(value: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    """Parse an organization id from provider metadata. Malformed ids are a tenancy failure."""
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise TenancyViolation(f"Malformed organization id in metadata: {value!r}")


def ensure_same_organization(
    expected: uuid.UUID,
    actual: Optional[uuid.UUID],
    what: str,
) -> None:
    """Raise TenancyViolation when `actual` is set and belongs to another organization."""
    if actual is not None and actual != expected:
        raise TenancyViolation(
            f"{what} belongs to organization {actual}, expected {expected}"
        )
