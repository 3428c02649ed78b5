from src.auth.context import AuthContext, SuperAdminContext
from src.auth.dependencies import (
    get_current_auth,
    get_current_super_admin,
    has_permission,
)

__all__ = [
    "AuthContext",
    "SuperAdminContext",
    "get_current_auth",
    "get_current_super_admin",
    "has_permission",
]
