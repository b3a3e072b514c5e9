"""
Structured permission keys.

A permission is addressed by ``(module, resource, action)``. Call sites build
a ``PermissionKey`` instead of joining raw strings, so a typo fails loudly at
construction time rather than silently matching nothing.
"""
import re
from dataclasses import dataclass

from app.core.errors import InvalidInput

# Identifier format shared by module, resource, action and role names
NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

SEPARATOR = ":"

# The designated super-privileged system role (global scope)
SUPER_ADMIN_ROLE = "super_admin"

# Module used for the authorization engine's own permissions
USER_MANAGEMENT_MODULE = "user_management"

# Query value selecting roles that belong to no module
GLOBAL_SCOPE = "global"


def validate_name(value: str, field: str = "name") -> str:
    """Return ``value`` if it is a valid identifier, else raise ``InvalidInput``."""
    if not isinstance(value, str) or not NAME_PATTERN.fullmatch(value):
        raise InvalidInput(
            f"{field} must start with a letter and contain only lowercase letters, digits and underscores"
        )
    return value


@dataclass(frozen=True, order=True)
class PermissionKey:
    module: str
    resource: str
    action: str

    def __post_init__(self):
        validate_name(self.module, "module")
        validate_name(self.resource, "resource")
        validate_name(self.action, "action")

    @classmethod
    def parse(cls, value: str) -> "PermissionKey":
        """
        Parse the canonical ``module:resource:action`` form.

        Example:
            PermissionKey.parse("cms:articles:create")
        """
        parts = value.split(SEPARATOR) if isinstance(value, str) else []
        if len(parts) != 3:
            raise InvalidInput(f"Permission key must have the form module{SEPARATOR}resource{SEPARATOR}action")
        return cls(*parts)

    def __str__(self) -> str:
        return SEPARATOR.join((self.module, self.resource, self.action))


def user_management(resource: str, action: str) -> PermissionKey:
    """Shorthand for keys guarding the authorization engine's own endpoints."""
    return PermissionKey(USER_MANAGEMENT_MODULE, resource, action)
