# /engage/dependencies/tenant.py

from fastapi import Depends, HTTPException, status

from engage.utils.dependencies import verify_jwt_token


def get_tenant_id(payload: dict = Depends(verify_jwt_token)) -> str:
    """
    Store id the caller's access token was issued for.

    Raises:
        HTTPException 403: If the token carries no tenant
    """
    tenant_id = payload.get("tenant_id")
    if isinstance(tenant_id, str):
        tenant_id = tenant_id.strip()

    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context missing"
        )
    return tenant_id
