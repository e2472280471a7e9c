from sqlalchemy import Column, Index, Integer, String, Text, TIMESTAMP, text

from cardsync.database import Base, JSONVariant
from cardsync.core.enums import RetryJobStatus
from cardsync.core.utils import utcnow

PENDING_STATUSES = (RetryJobStatus.QUEUED.value, RetryJobStatus.RUNNING.value)
QUEUED_INDEX_WHERE = text("status = 'queued'")


class RetryJob(Base):
    """
    Side-effect action against the remote store that must eventually succeed.

    At most one queued job exists per (job_type, store_key, sku). A running job
    may have one queued successor carrying a newer payload; the successor is not
    claimed until the running job settles. Dead and done rows are kept for
    operators and never purged automatically.
    """

    __tablename__ = "retry_jobs"
    __table_args__ = (
        Index(
            "uq_retry_jobs_queued_type_store_sku",
            "job_type",
            "store_key",
            "sku",
            unique=True,
            postgresql_where=QUEUED_INDEX_WHERE,
            sqlite_where=QUEUED_INDEX_WHERE,
        ),
        Index("ix_retry_jobs_status_next_run", "status", "next_run_at"),
    )

    id = Column(Integer, primary_key=True)
    job_type = Column(String(32), nullable=False)
    store_key = Column(String(64), nullable=False)
    sku = Column(String, nullable=False, index=True)
    payload = Column(JSONVariant, nullable=False)
    status = Column(String(16), nullable=False, default=RetryJobStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_run_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False)
    last_error = Column(Text, nullable=True)
    started_at = Column(TIMESTAMP(timezone=False), nullable=True)
    created_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RetryJob(id={self.id}, type={self.job_type}, store={self.store_key}, "
            f"sku={self.sku}, status={self.status})>"
        )
