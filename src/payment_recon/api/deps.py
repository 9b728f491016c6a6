from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_recon.core.db import db_session
from payment_recon.core.logging import get_logger, log_event, set_actor_context
from payment_recon.core.security import decode_access_token
from payment_recon.modules.identity.models import RECONCILER_ROLES, User, UserRole

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _subject_user_id(token: str) -> uuid.UUID:
    subject = decode_access_token(token)
    if not subject:
        raise _unauthorized("Invalid token")
    try:
        return uuid.UUID(subject)
    except ValueError as e:
        raise _unauthorized("Invalid token") from e


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(db_session),
) -> User:
    """The authenticated actor. Every reconciliation transition is attributed to this user."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated")

    user_id = _subject_user_id(credentials.credentials)
    user = session.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise _unauthorized("Invalid user")
    set_actor_context(str(user.id))
    return user


def require_role(*roles: UserRole):
    def _checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            log_event(
                logger,
                "auth.role.denied",
                role=user.role.value,
                required=[r.value for r in roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions"
            )
        return user

    return _checker


require_reconciler = require_role(*RECONCILER_ROLES)
require_admin = require_role(UserRole.ADMIN)
