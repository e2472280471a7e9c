# tests/test_routes/test_webhook_routes.py
import json
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from cardsync.core.enums import ItemType, WebhookOutcome
from cardsync.models.inventory_item import InventoryItem
from cardsync.services import webhook_health
from cardsync.services.reconciliation_service import HandlerResult, ReconciliationService
from cardsync.services.webhook_ledger import get_by_webhook_id
from cardsync.services.webhook_signature import compute_signature
from tests.conftest import STORE_DOMAIN, WEBHOOK_SECRET


def _post(client, topic, payload, webhook_id=None, secret=WEBHOOK_SECRET, domain=STORE_DOMAIN, signature=None):
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Webhook-Id": webhook_id or str(uuid.uuid4()),
        "X-Shopify-Shop-Domain": domain,
        "X-Shopify-Hmac-Sha256": signature if signature is not None else compute_signature(body, secret),
    }
    return client.post("/webhooks/shopify", content=body, headers=headers)


def _order(item, order_id=8001):
    return {
        "id": order_id,
        "financial_status": "paid",
        "line_items": [{"id": 1, "sku": item.sku, "variant_id": int(item.remote_variant_id), "quantity": 1, "price": "99.00"}],
    }


async def _quantity(db_session, item_id):
    result = await db_session.execute(select(InventoryItem.quantity).where(InventoryItem.id == item_id))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_paid_order_is_processed(test_client, db_session, make_item):
    item = await make_item("PSA-W1", item_type=ItemType.GRADED)

    response = _post(test_client, "orders/paid", _order(item), webhook_id="wh-1")

    assert response.status_code == 200
    assert response.json() == {"status": "processed", "items": [item.id]}
    assert await _quantity(db_session, item.id) == 0
    event = await get_by_webhook_id(db_session, "wh-1")
    assert event.outcome == WebhookOutcome.PROCESSED.value
    assert event.store_key == "main-store"


@pytest.mark.asyncio
async def test_redelivery_is_acknowledged_as_duplicate(test_client, db_session, make_item):
    item = await make_item("RAW-W1", quantity=5)

    first = _post(test_client, "orders/create", _order(item), webhook_id="wh-2")
    second = _post(test_client, "orders/create", _order(item), webhook_id="wh-2")

    assert first.json()["status"] == "processed"
    assert second.status_code == 200
    assert second.json() == {"status": "duplicate"}
    assert await _quantity(db_session, item.id) == 4


@pytest.mark.asyncio
async def test_same_order_under_new_webhook_id_sells_once(test_client, db_session, make_item):
    item = await make_item("RAW-W2", quantity=5)

    _post(test_client, "orders/create", _order(item, order_id=8002))
    response = _post(test_client, "orders/paid", _order(item, order_id=8002))

    assert response.json()["status"] == WebhookOutcome.NOOP.value
    assert await _quantity(db_session, item.id) == 4


@pytest.mark.asyncio
async def test_bad_signature_rejected_and_not_recorded(test_client, db_session, store):
    response = _post(test_client, "orders/paid", {"id": 1}, webhook_id="wh-3", secret="not-the-secret")

    assert response.status_code == 401
    assert await get_by_webhook_id(db_session, "wh-3") is None


@pytest.mark.asyncio
async def test_missing_signature_rejected(test_client, store):
    response = _post(test_client, "orders/paid", {"id": 1}, signature="")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_missing_webhook_id_is_bad_request(test_client, store):
    body = b'{"id": 1}'
    response = test_client.post("/webhooks/shopify", content=body, headers={
        "X-Shopify-Topic": "orders/paid",
        "X-Shopify-Shop-Domain": STORE_DOMAIN,
        "X-Shopify-Hmac-Sha256": compute_signature(body, WEBHOOK_SECRET),
    })

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_signed_non_json_body_is_bad_request(test_client, store):
    body = b"not json"
    response = test_client.post("/webhooks/shopify", content=body, headers={
        "X-Shopify-Topic": "orders/paid",
        "X-Shopify-Webhook-Id": "wh-4",
        "X-Shopify-Shop-Domain": STORE_DOMAIN,
        "X-Shopify-Hmac-Sha256": compute_signature(body, WEBHOOK_SECRET),
    })

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_shop_is_acknowledged_not_processed(test_client, db_session, store):
    # Unknown domains fall back to the global secret
    response = _post(test_client, "orders/paid", {"id": 1}, webhook_id="wh-5", domain="other-shop.myshopify.com")

    assert response.status_code == 200
    assert response.json()["status"] == WebhookOutcome.UNRESOLVED_STORE.value
    event = await get_by_webhook_id(db_session, "wh-5")
    assert event.store_key is None
    assert await webhook_health.list_health(db_session) == []


@pytest.mark.asyncio
async def test_unhandled_topic_is_ignored(test_client, db_session, store):
    response = _post(test_client, "customers/create", {"id": 77}, webhook_id="wh-6")

    assert response.status_code == 200
    assert response.json()["status"] == WebhookOutcome.IGNORED.value
    assert (await get_by_webhook_id(db_session, "wh-6")).outcome == WebhookOutcome.IGNORED.value


@pytest.mark.asyncio
async def test_malformed_payload_is_acknowledged(test_client, store):
    response = _post(test_client, "orders/paid", {"line_items": "nope"})

    assert response.status_code == 200
    assert response.json()["status"] == WebhookOutcome.INVALID_PAYLOAD.value


@pytest.mark.asyncio
async def test_handler_failure_returns_500_and_allows_redelivery(test_client, db_session, make_item, mocker):
    item = await make_item("RAW-W3", quantity=2)
    mocker.patch.object(
        ReconciliationService, "handle_sale", AsyncMock(return_value=HandlerResult.failed("database down")),
    )

    response = _post(test_client, "orders/paid", _order(item), webhook_id="wh-7")

    assert response.status_code == 500
    assert await get_by_webhook_id(db_session, "wh-7") is None
    assert await _quantity(db_session, item.id) == 2
    (health,) = await webhook_health.list_health(db_session)
    assert health.last_outcome == "failed"
    assert health.last_error == "database down"


@pytest.mark.asyncio
async def test_accepted_deliveries_update_feed_health(test_client, db_session, make_item):
    item = await make_item("RAW-W4", quantity=5)

    _post(test_client, "orders/paid", _order(item, order_id=8004), webhook_id="wh-8")
    _post(test_client, "orders/paid", _order(item, order_id=8004), webhook_id="wh-8")

    (health,) = await webhook_health.list_health(db_session)
    assert (health.store_key, health.topic) == ("main-store", "orders/paid")
    assert health.event_count == 2
    assert health.last_outcome == "duplicate"
    assert health.last_webhook_id == "wh-8"
