from fastapi import Depends, Header, HTTPException, status
from src.auth.context import AuthContext, SuperAdminContext
from src.auth.jwt import decode_access_token, decode_super_admin_token
from src.db import supabase


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _get_membership(user_id: str, company_id: str) -> dict | None:
    """Load the user's active membership in the company named by the session."""
    result = supabase.table("organization_memberships").select(
        "user_id, company_id, role, email"
    ).eq("user_id", user_id).eq("company_id", company_id).is_("deleted_at", "null").execute()
    if not result.data:
        return None
    return result.data[0]


async def get_current_user(authorization: str | None = Header(None)) -> AuthContext:
    """JWT session auth for dashboard billing endpoints."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_access_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    membership = _get_membership(payload["sub"], payload["company_id"])
    if not membership:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No active membership for this company",
        )

    return AuthContext(
        user_id=payload["sub"],
        company_id=payload["company_id"],
        role=membership["role"],
        email=membership.get("email"),
    )


async def get_current_super_admin(authorization: str | None = Header(None)) -> SuperAdminContext:
    """
    Super-admin JWT auth. Validates token type is 'super_admin' and user exists in super_admins table.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_super_admin_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired super-admin token",
        )

    result = supabase.table("super_admins").select("id, email").eq(
        "id", payload["sub"]
    ).execute()

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Super-admin not found",
        )

    super_admin = result.data[0]
    return SuperAdminContext(
        super_admin_id=super_admin["id"],
        email=super_admin["email"],
    )


def require_permission(permission_key: str):
    async def _require(auth: AuthContext = Depends(get_current_user)) -> AuthContext:
        if permission_key not in auth.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission required: {permission_key}",
            )
        return auth

    return _require
