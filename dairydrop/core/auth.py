# dairydrop/core/auth.py

import uuid
from typing import Callable, NamedTuple

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlmodel import Session

from dairydrop.core.config import get_settings
from dairydrop.database import get_session
from dairydrop.models.user import User

ROLE_CUSTOMER = "customer"
ROLE_ADMIN = "admin"

# Missing headers must reach require_auth (401), not HTTPBearer's 403.
bearer_scheme = HTTPBearer(auto_error=False)


class TokenIdentity(NamedTuple):
    user_id: uuid.UUID
    email: str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def read_token_identity(token: str) -> TokenIdentity:
    """
    Verify a Supabase access token and pull out who it belongs to.

    Checked: signature (SUPABASE_JWT_SECRET / SUPABASE_JWT_ALG) and exp.
    Not checked: aud, which differs between Supabase projects.

    Raises:
        HTTPException(401): bad signature, expired, or sub/email unusable.
    """
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[settings.SUPABASE_JWT_ALG],
            options={"verify_aud": False},
        )
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    sub, email = claims.get("sub"), claims.get("email")
    if not sub or not email:
        raise _unauthorized("Token missing sub/email")

    try:
        return TokenIdentity(user_id=uuid.UUID(sub), email=email)
    except ValueError:
        raise _unauthorized("Invalid sub in token")


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User | None:
    """
    Anonymous requests resolve to None.

    A valid token whose user has no profile row yet gets a customer
    profile on the spot; admin rights are only ever granted in the
    database.
    """
    if credentials is None:
        return None

    identity = read_token_identity(credentials.credentials)
    user = session.get(User, identity.user_id)
    if user is not None:
        return user

    user = User(
        id=identity.user_id,
        email=identity.email,
        name=identity.email.partition("@")[0] or identity.email,
        role=ROLE_CUSTOMER,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def require_auth(user: User | None = Depends(get_current_user)) -> User:
    if user is None:
        raise _unauthorized("Authentication required")
    return user


def _require_role(role: str, detail: str) -> Callable[[User], User]:
    def dependency(user: User = Depends(require_auth)) -> User:
        if user.role != role:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return user

    dependency.__name__ = f"require_{role}"
    return dependency


# Order, delivery, payment and refund processing.
require_admin = _require_role(ROLE_ADMIN, "Admin access required")

# Checkout, own orders and refund requests; admins get 403.
require_customer = _require_role(ROLE_CUSTOMER, "Customer access required")
