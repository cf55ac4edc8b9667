"""
FastAPI dependencies for authentication.
"""
from typing import Annotated, Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.base import utcnow
from app.core.database.engine import get_db
from app.core.exceptions import Conflict, Unauthorized
from app.features.users.models import User, UserRole
from app.features.users.auth import verify_jwt_token
from app.utils import get_logger


log = get_logger(__name__)
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from JWT token.

    This dependency:
    1. Extracts JWT from Authorization header
    2. Verifies JWT signature and expiry
    3. Looks up the user by subject, provisioning an employee on first login
    4. Updates last_login_at timestamp

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    if credentials is None:
        raise Unauthorized("Not authenticated")

    payload = verify_jwt_token(credentials.credentials)
    subject = str(payload["sub"])

    user = await find_user_by_subject(db, subject)

    # If user doesn't exist locally, provision from the token claims
    if user is None:
        email = payload.get("email")
        if not email:
            raise Unauthorized("Unknown user")

        name = payload.get("name") or email.split("@")[0]
        first_name, _, last_name = name.partition(" ")
        user = User(
            external_id=subject,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=UserRole.EMPLOYEE,
            last_login_at=utcnow(),
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent first request provisioned the same subject
            await db.rollback()
            user = await find_user_by_subject(db, subject)
            if user is None:
                raise Conflict(f"Email {email} belongs to another account")
        else:
            log.info("Provisioned user %s (%s) as employee", user.id, email)

    user.last_login_at = utcnow()
    await db.commit()
    await db.refresh(user)

    if not user.is_active:
        raise Unauthorized("User account is deactivated")

    return user


async def find_user_by_subject(db: AsyncSession, subject: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.external_id == subject)
    )
    return result.scalar_one_or_none()


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
