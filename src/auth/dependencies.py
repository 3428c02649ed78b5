from fastapi import Depends, Header, HTTPException, status
from src.auth.context import AuthContext, SuperAdminContext
from src.auth.jwt import decode_access_token, decode_super_admin_token
from src.auth.permissions import role_has_permission
from src.db import DocumentStore, get_store


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _get_active_user(store: DocumentStore, user_id: str, org_id: str) -> dict | None:
    """Load the user document and require it to belong to the token's org."""
    user = store.get(f"users/{user_id}")
    if not user or user.get("orgId") != org_id:
        return None
    if user.get("disabled"):
        return None
    return user


async def get_current_auth(
    authorization: str | None = Header(None),
    store: DocumentStore = Depends(get_store),
) -> AuthContext:
    """JWT session auth for dashboard endpoints."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_access_token(token)
    user = _get_active_user(store, payload["sub"], payload["org_id"]) if payload else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    try:
        return AuthContext(org_id=payload["org_id"], user_id=payload["sub"], role=user.get("role", ""))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unsupported role",
        ) from exc


async def get_current_super_admin(
    authorization: str | None = Header(None),
    store: DocumentStore = Depends(get_store),
) -> SuperAdminContext:
    """
    Super-admin JWT auth. Validates token type is 'super_admin' and a super_admins document exists.
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

    super_admin = store.get(f"super_admins/{payload['sub']}")
    if not super_admin:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Super-admin not found",
        )

    return SuperAdminContext(
        super_admin_id=payload["sub"],
        email=super_admin.get("email", ""),
    )


def has_permission(auth: AuthContext, permission_key: str) -> bool:
    if permission_key in auth.permissions:
        return True
    return role_has_permission(auth.role, permission_key)
