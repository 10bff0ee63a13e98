"""Authentication: bearer token verification and principal resolution."""

from coursemedia.modules.auth.jwt import (
    Principal,
    ROLE_ADMIN,
    get_current_principal,
    get_optional_principal,
    require_admin,
)

__all__ = [
    "Principal",
    "ROLE_ADMIN",
    "get_current_principal",
    "get_optional_principal",
    "require_admin",
]
