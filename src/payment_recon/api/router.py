from __future__ import annotations

from fastapi import APIRouter

from payment_recon.modules.identity.api import router as identity_router
from payment_recon.modules.invoices.api import router as invoices_router
from payment_recon.modules.mailboxes.api import router as mailboxes_router
from payment_recon.modules.reconciliation.api import router as reconciliation_router

router = APIRouter()

router.include_router(identity_router, prefix="/api")
router.include_router(invoices_router, prefix="/api")
router.include_router(mailboxes_router, prefix="/api")
router.include_router(reconciliation_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
