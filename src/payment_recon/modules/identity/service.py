from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_recon.core.logging import get_logger, log_event
from payment_recon.core.models import utcnow
from payment_recon.core.security import hash_password, verify_password
from payment_recon.modules.identity.models import User, UserRole

logger = get_logger(__name__)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def get_user(session: Session, *, user_id: uuid.UUID) -> User:
    user = session.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == _normalize_email(email)))


def list_users(session: Session) -> list[User]:
    return list(session.scalars(select(User).order_by(User.email)))


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    role: UserRole,
    full_name: str | None = None,
) -> User:
    email = _normalize_email(email)
    if get_user_by_email(session, email=email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    user = User(
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    log_event(logger, "identity.user.created", user_id=str(user.id), role=role.value)
    return user


def update_user(
    session: Session,
    *,
    user_id: uuid.UUID,
    acting_user_id: uuid.UUID,
    role: UserRole | None = None,
    is_active: bool | None = None,
) -> User:
    """Change a user's role or active flag.

    Users are never deleted; audit events and matches keep pointing at them.
    """
    user = get_user(session, user_id=user_id)
    if user.id == acting_user_id and (is_active is False or role not in (None, user.role)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot demote themselves"
        )
    if role is not None:
        user.role = role
    if is_active is not None:
        user.is_active = is_active
    session.commit()
    session.refresh(user)
    log_event(
        logger,
        "identity.user.updated",
        user_id=str(user.id),
        role=user.role.value,
        is_active=user.is_active,
    )
    return user


def authenticate_user(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email=email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        log_event(logger, "identity.login.failure")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    user.last_login_at = utcnow()
    session.commit()
    session.refresh(user)
    return user
