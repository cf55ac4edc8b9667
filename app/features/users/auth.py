"""
Authentication utilities for identity-provider JWT verification.
"""
import jwt

from app.core import config
from app.core.exceptions import Unauthorized


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer JWT issued by the identity provider and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload containing the `sub` claim and, optionally, `email`
        and `name`

    Raises:
        Unauthorized: If token is invalid or expired
    """
    if not config.JWT_SECRET:
        raise Unauthorized("Token verification is not configured")

    options = {"verify_exp": True, "require": ["sub"]}
    try:
        return jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            audience=config.JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        raise Unauthorized(f"Invalid token: {str(e)}")
