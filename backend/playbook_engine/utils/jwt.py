"""JWT Token Validation for bearer tokens issued by the identity service"""
import jwt
from typing import Any, Dict, Optional

from ..config.settings import settings
from ..domain.errors import AuthenticationError
from ..domain.models import ActorContext
from .logger import get_logger

logger = get_logger(__name__)


class JWTValidator:
    """HS256 JWT validator; token issuance happens elsewhere"""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None, audience: Optional[str] = None):
        self.secret = secret or settings.jwt_secret
        self.algorithm = algorithm or settings.jwt_algorithm
        self.audience = audience if audience is not None else settings.jwt_audience

    def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Validate JWT token

        Args:
            token: Bearer token (with or without 'Bearer ' prefix)

        Returns:
            Decoded token claims

        Raises:
            AuthenticationError: If token is invalid
        """
        if not token:
            raise AuthenticationError("Token is missing")

        if token.startswith("Bearer "):
            token = token[7:]

        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience or None,
                options={
                    "verify_exp": True,
                    "verify_aud": bool(self.audience),
                    "require": ["sub"],
                }
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            raise AuthenticationError("Token has expired")
        except jwt.InvalidAudienceError as e:
            logger.warning(f"Invalid token audience: {e}")
            raise AuthenticationError("Invalid token audience")
        except jwt.PyJWTError as e:
            logger.warning(f"JWT validation error: {e}")
            raise AuthenticationError(f"Invalid token: {str(e)}")

    def get_actor_context(self, token: str) -> ActorContext:
        """
        Extract actor context from validated token

        Claims: sub (user entity id), org (organization id), email, name, roles
        """
        claims = self.validate_token(token)

        user_id = claims.get("sub")
        organization_id = claims.get("org") or claims.get("organization_id")
        if not user_id or not organization_id:
            logger.warning(f"Token lacks user or organization. Available claims: {list(claims.keys())}")
            raise AuthenticationError("Token must carry user and organization claims")

        roles = claims.get("roles", [])
        if isinstance(roles, str):
            roles = [roles]

        return ActorContext(
            user_id=str(user_id),
            organization_id=str(organization_id),
            email=claims.get("email"),
            display_name=claims.get("name", claims.get("email")),
            roles=list(roles),
        )


# Global validator instance
_jwt_validator: Optional[JWTValidator] = None


def get_jwt_validator() -> JWTValidator:
    """Get global JWT validator instance"""
    global _jwt_validator
    if _jwt_validator is None:
        _jwt_validator = JWTValidator()
    return _jwt_validator


def get_current_user(authorization: str) -> ActorContext:
    """
    Get current user from authorization header

    Args:
        authorization: Authorization header value

    Returns:
        ActorContext
    """
    if not authorization:
        raise AuthenticationError("Authorization header is missing")

    validator = get_jwt_validator()
    return validator.get_actor_context(authorization)
