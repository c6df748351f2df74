"""
JWT token service for the management API.

SECURITY: The token subject is the account id. Every management query MUST
be scoped to it.
"""
from datetime import timedelta
from jose import JWTError, jwt

from relay.config import settings
from relay.models.base import utcnow


class JWTService:
    """Service for creating and verifying JWT tokens."""
    
    def create_token(self, account_id: str, email: str) -> str:
        """
        Create a JWT token with account context.
        
        Args:
            account_id: Account's unique ID
            email: Account email
            
        Returns:
            Encoded JWT token string
        """
        expires = utcnow() + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
        
        payload = {
            "sub": account_id,
            "email": email,
            "exp": expires
        }
        
        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    
    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.
        
        Args:
            token: JWT token string
            
        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token, 
                settings.JWT_SECRET_KEY, 
                algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except JWTError:
            return None
