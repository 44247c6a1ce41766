"""
Change-feed outbox.

Every mutation of a ride, booking, rating or user appends one row here inside
the same transaction, carrying before/after snapshots. The notification
pipeline drains unprocessed rows asynchronously (at-least-once).
"""

from sqlalchemy import Column, Integer, String, JSON, Index

from carpool.db.base import Base, TimestampMixin, UTCDateTime


class ChangeRecord(Base, TimestampMixin):
    __tablename__ = "change_records"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Integer, nullable=False)
    kind = Column(String(10), nullable=False)  # created, modified, removed
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    processed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_change_records_pending", "processed_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<ChangeRecord(id={self.id}, {self.entity_type}#{self.entity_id} {self.kind})>"
