"""
Role checks for experiment operations.

Authentication happens outside this package; callers pass the role the auth
layer resolved. Creating experiments and changing their lifecycle is
privileged; assignment, tracking and reads are open to every role.
"""

from enum import Enum
from typing import Union

from .errors import AuthorizationError


class Role(str, Enum):
    ADMIN = "admin"
    EXPERIMENTER = "experimenter"
    VIEWER = "viewer"
    SERVICE = "service"


PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.EXPERIMENTER})


def require_privileged(role: Union[Role, str], operation: str) -> None:
    """Raise AuthorizationError unless the role may create or transition experiments."""
    try:
        resolved = Role(role)
    except ValueError:
        raise AuthorizationError(
            f"Unknown role '{role}' for {operation}", details={"operation": operation}
        )
    if resolved not in PRIVILEGED_ROLES:
        raise AuthorizationError(
            f"Role '{resolved.value}' may not {operation}",
            details={"operation": operation, "role": resolved.value},
        )
