"""
Billing Router

Receives payment provider webhooks. Orders and refunds change scan credits
and monitoring plans; see app.services.billing.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.billing import BillingWebhookProcessor
from app.services.rate_limiter import WEBHOOK_RATE_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def billing_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle a Lemon Squeezy webhook.

    The signature covers the raw body, so the body is read before any
    JSON parsing.
    """
    payload = await request.body()
    outcome = BillingWebhookProcessor(db).handle(payload, request.headers)
    return JSONResponse(status_code=outcome.status_code, content={"status": outcome.message})
