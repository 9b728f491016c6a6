from __future__ import annotations

# isort: off
import payment_recon.models  # noqa: F401
# isort: on

from sqlalchemy import select

from payment_recon.core.config import settings
from payment_recon.core.db import IS_SQLITE, engine, session_scope
from payment_recon.core.logging import get_logger, log_event
from payment_recon.core.models import Base
from payment_recon.core.security import hash_password
from payment_recon.modules.identity.models import User, UserRole

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and IS_SQLITE:
        Base.metadata.create_all(engine)

    if not settings.init_admin_email or not settings.init_admin_password:
        return

    # Support comma-separated list of admin emails
    admin_emails = [e.strip().lower() for e in settings.init_admin_email.split(",") if e.strip()]
    if not admin_emails:
        return

    with session_scope() as session:
        for email in admin_emails:
            existing = session.scalar(select(User).where(User.email == email))
            if existing:
                if existing.role != UserRole.ADMIN:
                    existing.role = UserRole.ADMIN
                    session.add(existing)
                continue
            session.add(
                User(
                    email=email,
                    full_name="Admin",
                    password_hash=hash_password(settings.init_admin_password),
                    role=UserRole.ADMIN,
                    is_active=True,
                )
            )
            log_event(logger, "bootstrap.admin.created", email=email)
        session.commit()
