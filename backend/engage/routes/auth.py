# /engage/routes/auth.py

from fastapi import APIRouter, Depends, HTTPException, Request, status

from engage.config.settings import settings
from engage.models.api import LoginRequest, TokenResponse, APIResponse
from engage.utils.dependencies import verify_jwt_token
from engage.utils.metrics import auth_attempts_counter
from engage.utils.request_utils import get_remote_address
from engage.services.security_service import SecurityService, login_tracker
from engage.services.jwt_service import jwt_service
from engage.services.db_service import db_service
from engage.utils.rate_limiter import limiter

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)


@router.post("/login", response_model=TokenResponse)
@limiter.limit(f"{settings.auth_rate_limit_per_minute}/minute")
async def login(request: Request, login_data: LoginRequest):
    client_ip = get_remote_address(request)

    if await login_tracker.is_locked_out(client_ip):
        auth_attempts_counter.labels(status="lockout", method="password").inc()
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed attempts. Please try again later."
        )

    if not SecurityService.verify_password(login_data.password, settings.admin_password):
        await login_tracker.record_attempt(client_ip)
        auth_attempts_counter.labels(status="failure", method="password").inc()
        await db_service.log_security_event("failed_login", client_ip, {"reason": "invalid_password"})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    store_id = login_data.store_id or settings.default_store_id
    access_token = jwt_service.create_access_token(
        data={"sub": "admin", "type": "access", "tenant_id": store_id, "ip": client_ip}
    )

    auth_attempts_counter.labels(status="success", method="password").inc()
    await db_service.log_security_event("successful_login", client_ip, {"method": "jwt", "store_id": store_id})

    return TokenResponse(
        access_token=access_token,
        token_type="bearer",
        expires_in=settings.jwt_access_token_expire_hours * 3600
    )


@router.get("/me", response_model=APIResponse)
async def read_current_user(current_user: dict = Depends(verify_jwt_token)):
    return APIResponse(
        success=True,
        message="User authenticated successfully.",
        data={"user": {"username": current_user.get("sub"), "store_id": current_user.get("tenant_id")}},
        version=settings.api_version
    )
