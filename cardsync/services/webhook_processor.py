"""
Inbound Shopify webhook pipeline.

Order of work for one delivery:
  headers -> store lookup -> HMAC over the raw body -> JSON decode
  -> idempotency ledger -> topic classification -> reconciliation handler

The ledger row and the handler's changes share one transaction. A handler
failure rolls both back, so Shopify's redelivery is processed as new; every
other outcome is committed and acknowledged with 200. Deliveries from known
stores then update webhook_health in a separate short transaction.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.config import get_settings
from cardsync.core.enums import HandlerOutcome, WebhookOutcome, WebhookTopic
from cardsync.core.utils import to_location_gid
from cardsync.schemas.webhooks import (
    InventoryLevelPayload,
    OrderPayload,
    ProductListingPayload,
    ProductPayload,
    RefundPayload,
)
from cardsync.services import webhook_health, webhook_ledger
from cardsync.services.reconciliation_service import (
    HandlerResult,
    ReconciliationService,
    StoreContext,
)
from cardsync.services.store_resolver import normalize_domain, resolve_store
from cardsync.services.webhook_signature import SignatureResult, verify_signature

logger = logging.getLogger(__name__)


@dataclass
class WebhookHeaders:
    topic: Optional[str]
    hmac: Optional[str]
    webhook_id: Optional[str]
    shop_domain: Optional[str]

    @classmethod
    def from_mapping(cls, headers) -> "WebhookHeaders":
        return cls(
            topic=headers.get("x-shopify-topic"),
            hmac=headers.get("x-shopify-hmac-sha256"),
            webhook_id=headers.get("x-shopify-webhook-id"),
            shop_domain=headers.get("x-shopify-shop-domain"),
        )


@dataclass
class WebhookResponse:
    status_code: int
    status: str
    detail: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_body(self) -> Dict[str, Any]:
        body = {"status": self.status}
        if self.detail:
            body["detail"] = self.detail
        body.update(self.extra)
        return body


class WebhookProcessor:
    def __init__(self, db: AsyncSession, fallback_secret: Optional[str] = None):
        self.db = db
        self.fallback_secret = fallback_secret if fallback_secret is not None else get_settings().SHOPIFY_WEBHOOK_SECRET
        self.reconciliation = ReconciliationService(db)

    async def process(self, headers: WebhookHeaders, raw_body: bytes) -> WebhookResponse:
        if not headers.topic or not headers.webhook_id:
            logger.warning("Rejecting webhook without topic/id (topic=%s id=%s)", headers.topic, headers.webhook_id)
            return WebhookResponse(400, "error", "missing X-Shopify-Topic or X-Shopify-Webhook-Id")

        store = await resolve_store(self.db, headers.shop_domain)
        secret = (store.webhook_secret if store and store.webhook_secret else None) or self.fallback_secret

        if verify_signature(raw_body, headers.hmac, secret) != SignatureResult.VALID:
            logger.warning(
                "Invalid webhook signature: id=%s topic=%s domain=%s",
                headers.webhook_id, headers.topic, headers.shop_domain,
            )
            return WebhookResponse(401, "error", "invalid signature")

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            return WebhookResponse(400, "error", "body is not valid JSON")
        if not isinstance(payload, dict):
            return WebhookResponse(400, "error", "body must be a JSON object")

        topic = WebhookTopic.from_header(headers.topic)
        location_gid = to_location_gid(payload.get("location_id"))
        delivery = webhook_health.Delivery(
            store_key=store.key,
            topic=headers.topic,
            webhook_id=headers.webhook_id,
            location_gid=location_gid,
        ) if store else None
        try:
            ledger = await webhook_ledger.record_if_new(
                self.db,
                webhook_id=headers.webhook_id,
                topic=headers.topic,
                payload=payload,
                store_key=store.key if store else None,
                shop_domain=normalize_domain(headers.shop_domain),
                location_gid=location_gid,
            )
        except SQLAlchemyError:
            logger.exception("Could not write webhook %s to the ledger", headers.webhook_id)
            await self.db.rollback()
            return WebhookResponse(500, "error", "ledger unavailable")

        if not ledger.is_new:
            await self.db.rollback()
            await self._track_delivery(delivery, "duplicate")
            return WebhookResponse(200, "duplicate")

        if store is None:
            logger.warning("Webhook %s from unknown shop %s - acknowledged, not processed", headers.webhook_id, headers.shop_domain)
            return await self._finish(ledger.event_id, WebhookOutcome.UNRESOLVED_STORE)

        if topic == WebhookTopic.UNKNOWN:
            logger.info("Ignoring webhook topic %s (%s)", headers.topic, headers.webhook_id)
            return await self._finish(ledger.event_id, WebhookOutcome.IGNORED, delivery=delivery)

        ctx = StoreContext(store=store)
        try:
            result = await self.dispatch(topic, ctx, payload)
        except ValidationError as exc:
            logger.warning("Webhook %s (%s) payload rejected: %s", headers.webhook_id, headers.topic, exc)
            return await self._finish(ledger.event_id, WebhookOutcome.INVALID_PAYLOAD, delivery=delivery)

        if result.outcome == HandlerOutcome.FAILED:
            logger.error("Webhook %s (%s) handler failed: %s", headers.webhook_id, headers.topic, result.message)
            await self.db.rollback()
            await self._track_delivery(delivery, "failed", error=result.message)
            return WebhookResponse(500, "error", "processing failed")

        outcome = WebhookOutcome.PROCESSED if result.outcome == HandlerOutcome.APPLIED else WebhookOutcome.NOOP
        logger.info("Webhook %s (%s) %s: %s", headers.webhook_id, headers.topic, outcome.value, result.message)
        return await self._finish(ledger.event_id, outcome, item_ids=result.item_ids, delivery=delivery)

    async def dispatch(self, topic: WebhookTopic, ctx: StoreContext, payload: Dict[str, Any]) -> HandlerResult:
        """Route a classified event to its handler. Raises ValidationError for malformed payloads."""
        handlers = self.reconciliation
        if topic == WebhookTopic.SALE_CONFIRMED:
            return await handlers.handle_sale(ctx, OrderPayload.model_validate(payload))
        elif topic == WebhookTopic.ORDER_CANCELLED:
            return await handlers.handle_cancellation(ctx, OrderPayload.model_validate(payload))
        elif topic == WebhookTopic.REFUND_CREATED:
            return await handlers.handle_refund(ctx, RefundPayload.model_validate(payload))
        elif topic == WebhookTopic.INVENTORY_LEVEL_CHANGED:
            return await handlers.handle_inventory_level(ctx, InventoryLevelPayload.model_validate(payload))
        elif topic == WebhookTopic.PRODUCT_UPDATED:
            return await handlers.handle_product_update(ctx, ProductPayload.model_validate(payload))
        elif topic == WebhookTopic.PRODUCT_DELETED:
            return await handlers.handle_product_deleted(ctx, ProductPayload.model_validate(payload))
        elif topic == WebhookTopic.LISTING_UNPUBLISHED:
            return await handlers.handle_listing_unpublished(ctx, ProductListingPayload.model_validate(payload))
        elif topic == WebhookTopic.UNKNOWN:
            return HandlerResult.noop("unknown topic")
        raise ValueError(f"Unhandled webhook topic {topic!r}")

    async def _finish(
        self,
        event_id: int,
        outcome: WebhookOutcome,
        item_ids=None,
        delivery: Optional[webhook_health.Delivery] = None,
    ) -> WebhookResponse:
        try:
            await webhook_ledger.set_outcome(self.db, event_id, outcome.value)
            await self.db.commit()
        except SQLAlchemyError:
            logger.exception("Commit failed for webhook event %s", event_id)
            await self.db.rollback()
            return WebhookResponse(500, "error", "commit failed")
        await self._track_delivery(delivery, outcome.value)
        extra = {"items": item_ids} if item_ids else {}
        return WebhookResponse(200, outcome.value, extra=extra)

    async def _track_delivery(
        self,
        delivery: Optional[webhook_health.Delivery],
        outcome: str,
        error: Optional[str] = None,
    ) -> None:
        """Health mark in its own transaction, after the ledger work; never changes the response."""
        if delivery is None:
            return
        try:
            await webhook_health.record_delivery(self.db, delivery, outcome, error=error)
            await self.db.commit()
        except SQLAlchemyError:
            logger.warning("Could not update webhook health for %s", delivery.webhook_id, exc_info=True)
            await self.db.rollback()
