"""
Authentication dependencies for FastAPI.

SECURITY: All management queries MUST include the account_id filter.
Failure to do so will leak delivery records between accounts.
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from relay.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # account_id
    email: str

    @property
    def account_id(self) -> str:
        return self.sub


async def get_current_account(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.
    
    Returns token payload if valid, raises 401 if invalid.
    
    Usage:
        @app.get("/protected")
        async def protected_route(token: TokenPayload = Depends(get_current_account)):
            ...
    """
    jwt_service = JWTService()
    
    payload = jwt_service.verify_token(credentials.credentials)
    
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    
    token = TokenPayload(**payload)
    # Picked up by the logging middleware
    request.state.account_id = token.sub
    return token
