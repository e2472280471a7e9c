# Idempotency ledger for inbound Shopify webhooks.

from sqlalchemy import Column, Integer, String, Text, TIMESTAMP, UniqueConstraint

from cardsync.database import Base, JSONVariant
from cardsync.core.utils import utcnow


class WebhookEvent(Base):
    """
    Durable receipt of one delivered webhook.

    The unique webhook_id is what makes replays a no-op: the row is inserted in
    the same transaction as the reconciliation it guards, so a handler failure
    rolls the receipt back and the remote retry is processed normally.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    webhook_id = Column(String(255), unique=True, nullable=False)
    topic = Column(String(64), nullable=False, index=True)
    store_key = Column(String(64), nullable=True, index=True)
    shop_domain = Column(String(255), nullable=True)
    location_gid = Column(String, nullable=True)
    payload = Column(JSONVariant, nullable=False)
    outcome = Column(String(32), nullable=True)

    received_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WebhookEvent(webhook_id={self.webhook_id}, topic={self.topic}, outcome={self.outcome})>"


class WebhookHealth(Base):
    """
    Last delivery seen per (store, location, topic).

    Store-wide deliveries use an empty location_gid so the triple stays a
    usable conflict target. Rows are upserted on every accepted delivery and
    read by the stale-feed check.
    """
    __tablename__ = "webhook_health"
    __table_args__ = (
        UniqueConstraint("store_key", "location_gid", "topic", name="uq_webhook_health_store_location_topic"),
    )

    id = Column(Integer, primary_key=True)
    store_key = Column(String(64), nullable=False, index=True)
    location_gid = Column(String, nullable=False, default="")
    topic = Column(String(64), nullable=False)
    last_received_at = Column(TIMESTAMP(timezone=False), nullable=False)
    last_webhook_id = Column(String(255), nullable=True)
    last_outcome = Column(String(32), nullable=True)
    event_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(TIMESTAMP(timezone=False), nullable=True)
    updated_at = Column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WebhookHealth(store={self.store_key}, topic={self.topic}, last={self.last_received_at})>"
