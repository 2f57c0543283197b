# /engage/services/jwt_service.py

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import HTTPException, status

from engage.config.settings import settings

# Issues and verifies the dashboard's bearer tokens. Every access token
# carries the tenant (store) it was issued for.


class JWTService:
    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def create_access_token(self, data: dict, expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(hours=settings.jwt_access_token_expire_hours))
        to_encode = data.copy()
        to_encode.update({
            "exp": expire,
            "iat": now,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Token verification failed: {e}",
                headers={"WWW-Authenticate": "Bearer"},
            )


jwt_service = JWTService(settings.jwt_secret_key, settings.jwt_algorithm)
