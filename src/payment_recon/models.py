"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - other models have relationships to User
from payment_recon.modules.identity.models import User  # noqa: F401

from payment_recon.modules.audit.models import AuditEvent  # noqa: F401
from payment_recon.modules.evidence.models import PaymentEvidence, PaymentMatch  # noqa: F401
from payment_recon.modules.invoices.models import Invoice  # noqa: F401
from payment_recon.modules.mailboxes.models import MailboxAccount  # noqa: F401
