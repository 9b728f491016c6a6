from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_recon.core.models import Base, Timestamped, UUIDPrimaryKey


class MailboxProvider(str, enum.Enum):
    GOOGLE = "GOOGLE"


class MailboxAccount(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "mailboxes_account"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "email", name="uq_mailbox_user_provider_email"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    provider: Mapped[MailboxProvider] = mapped_column(
        Enum(MailboxProvider, native_enum=False), default=MailboxProvider.GOOGLE
    )
    email: Mapped[str] = mapped_column(String(320))
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)

    user = relationship("User")
