from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, TIMESTAMP, text
from sqlalchemy.orm import relationship

from cardsync.database import Base
from cardsync.core.enums import SyncQueueStatus
from cardsync.core.utils import utcnow


class SyncQueueEntry(Base):
    """A local mutation waiting to be pushed to the remote catalog."""

    __tablename__ = "sync_queue"
    __table_args__ = (
        # At most one in-flight push per item
        Index(
            "uq_sync_queue_processing_item",
            "inventory_item_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
        Index("ix_sync_queue_status_queued_at", "status", "queued_at"),
    )

    id = Column(Integer, primary_key=True)
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    action = Column(String(16), nullable=False)  # create, update, delete
    status = Column(String(16), nullable=False, default=SyncQueueStatus.QUEUED.value, index=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    rate_limited_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    retry_after = Column(TIMESTAMP(timezone=False), nullable=True)  # Not eligible before this time
    remote_product_id = Column(String, nullable=True)

    queued_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False, index=True)
    started_at = Column(TIMESTAMP(timezone=False), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=False), nullable=True)
    updated_at = Column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    item = relationship("InventoryItem", back_populates="sync_entries")

    def __repr__(self) -> str:
        return (f"<SyncQueueEntry(id={self.id}, item={self.inventory_item_id}, action={self.action}, "
                f"status={self.status}, attempts={self.attempts}/{self.max_attempts})>")
