# storefront/core/auth.py
import uuid
from typing import Any

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from storefront.core.config import get_settings
from storefront.core.errors import ForbiddenError, UnauthorizedError
from storefront.database import get_session
from storefront.models.user import User

# HTTP Bearer scheme:
# - auto_error=False => a missing Authorization header reaches
#   require_auth, which raises UnauthorizedError (401 via the error handler).
bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> dict[str, Any]:
    """
    Decode and verify an access token (JWT) issued by the auth provider.

    Verification:
      - signature (AUTH_JWT_ALG using AUTH_JWT_SECRET)
      - expiration time (exp)
      - audience is NOT verified

    Raises:
        UnauthorizedError: if token is invalid/expired.
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALG],
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise UnauthorizedError("Invalid or expired token") from exc


def _default_name_from_email(email: str) -> str:
    """
    Derive a default display name from email.
    """
    if "@" in email:
        return email.split("@", 1)[0][:50]
    return email[:50]


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User | None:
    """
    Resolve the current user from the bearer JWT.

    Flow:
      1. No Authorization header => None.
      2. Decode JWT => extract 'sub' (user id) and 'email'.
      3. Find the mirrored profile in users; auto-provision if missing.
    """
    if credentials is None:
        return None

    payload = decode_access_token(credentials.credentials)
    sub = payload.get("sub")
    email = payload.get("email")

    if not sub or not email:
        raise UnauthorizedError("Token missing sub/email")

    try:
        sub_uuid = uuid.UUID(str(sub))
    except ValueError as exc:
        raise UnauthorizedError("Invalid sub in token") from exc

    user = session.exec(select(User).where(User.id == sub_uuid)).first()

    # Default role = "user" (admin must be manually promoted).
    if user is None:
        user = User(
            id=sub_uuid,
            email=email,
            name=_default_name_from_email(email),
            role="user",
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            # Provisioned concurrently by another request.
            session.rollback()
            user = session.exec(select(User).where(User.id == sub_uuid)).first()
            if user is None:
                raise UnauthorizedError("Could not provision user profile")
        session.refresh(user)

    return user


def require_auth(user: User | None = Depends(get_current_user)) -> User:
    """
    Enforce authentication.

    Raises:
        UnauthorizedError: if no valid token was presented.
    """
    if user is None:
        raise UnauthorizedError("Authentication required")
    return user


def require_admin(user: User = Depends(require_auth)) -> User:
    """
    Enforce admin role.

    Raises:
        ForbiddenError: if role is not admin.
    """
    if user.role != "admin":
        raise ForbiddenError("Admin access required")
    return user


def require_user(user: User = Depends(require_auth)) -> User:
    """
    Enforce that only customers (role='user') can access a route.

    Use this for cart, checkout, order and payment endpoints.
    Admins will be rejected with 403.
    """
    if user.role != "user":
        raise ForbiddenError("Customer access required")
    return user
