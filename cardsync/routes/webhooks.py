# cardsync/routes/webhooks.py
"""
Shopify webhook receiver.

Unauthenticated apart from the HMAC: the processor verifies the signature
against the raw body before anything is parsed or written.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.dependencies import get_db
from cardsync.services.webhook_processor import WebhookHeaders, WebhookProcessor

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/shopify")
async def shopify_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Receive one Shopify delivery; the status code tells Shopify whether to redeliver."""
    body = await request.body()
    result = await WebhookProcessor(db).process(WebhookHeaders.from_mapping(request.headers), body)
    return JSONResponse(status_code=result.status_code, content=result.as_body())
