from src.auth.context import AuthContext, SuperAdminContext
from src.auth.dependencies import (
    get_current_user,
    get_current_super_admin,
    require_permission,
)
from src.auth.jwt import create_access_token, create_super_admin_token

__all__ = [
    "AuthContext",
    "SuperAdminContext",
    "get_current_user",
    "get_current_super_admin",
    "require_permission",
    "create_access_token",
    "create_super_admin_token",
]
