from __future__ import annotations

from ..extensions import db
from tavola.time_utils import to_utc_z


class QueueStatus:
    QUEUED = "QUEUED"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncQueueItem(db.Model):
    """
    Durable outbox row: one mutation waiting to be replicated upstream.

    Rows are written in the same transaction as the mutation they describe,
    so a committed local change always has its replication queued.
    """
    __tablename__ = "sync_queue_items"
    __table_args__ = (
        db.Index("ix_sync_queue_status_next", "status", "next_attempt_at"),
        db.Index("ix_sync_queue_entity", "entity_type", "entity_id"),
        db.Index("ix_sync_queue_dedupe", "dedupe_key", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    operation = db.Column(db.String(32), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    dedupe_key = db.Column(db.String(128), nullable=False)
    payload_hash = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=QueueStatus.QUEUED)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "payload": self.payload,
            "dedupe_key": self.dedupe_key,
            "status": self.status,
            "retry_count": self.retry_count,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "synced_at": to_utc_z(self.synced_at),
        }
