from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from payment_recon.core.models import Base, Timestamped, UUIDPrimaryKey


class UserRole(str, enum.Enum):
    MEMBER = "MEMBER"
    FINANCE = "FINANCE"
    ADMIN = "ADMIN"


# Roles allowed to move evidence through the reconciliation state machine.
RECONCILER_ROLES = (UserRole.FINANCE, UserRole.ADMIN)


class User(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_user"

    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(200))
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, native_enum=False), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
