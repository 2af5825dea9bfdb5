"""
Webhook endpoints.

The raw body is read before any parsing: signatures are computed over the
exact bytes that were sent.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool

from ..schemas.webhook import WebhookAck
from ..services.webhook_reconciler import WebhookReconciler
from ..utils.dependencies import get_reconciler
from ..utils.rate_limiter import get_rate_limit, limiter

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
@limiter.limit(get_rate_limit("webhook"))
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    body = await request.body()
    outcome = await run_in_threadpool(reconciler.handle_stripe, body, stripe_signature)
    return WebhookAck(status=outcome.status, action=outcome.action)


@router.post("/booking/{provider}", response_model=WebhookAck)
@limiter.limit(get_rate_limit("webhook"))
async def supplier_webhook(
    provider: str,
    request: Request,
    x_supplier_signature: Optional[str] = Header(None, alias="X-Supplier-Signature"),
    x_supplier_timestamp: Optional[str] = Header(None, alias="X-Supplier-Timestamp"),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    """
    Status callbacks from inventory suppliers (booking.com, skyscanner).

    Signed with HMAC-SHA256 over the raw body (or "<timestamp>.<body>" when
    X-Supplier-Timestamp is sent) using the supplier's shared secret.
    """
    body = await request.body()
    outcome = await run_in_threadpool(
        reconciler.handle_supplier, provider, body, x_supplier_signature, x_supplier_timestamp
    )
    return WebhookAck(status=outcome.status, action=outcome.action)
