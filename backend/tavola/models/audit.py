from __future__ import annotations

from ..extensions import db
from tavola.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Signed, append-only audit record.

    The signature covers every column below except itself (see
    audit_service.signing_payload). Rows are never updated after insert; a
    changed field shows up as a failed verification.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_branch_created", "branch_id", "created_at"),
        db.Index("ix_audit_logs_event_created", "event_type", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    # Stable id shared with the upstream copy
    log_uid = db.Column(db.String(36), nullable=False, unique=True)
    event_type = db.Column(db.String(48), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    user_id = db.Column(db.Integer, nullable=True, index=True)
    user_name = db.Column(db.String(255), nullable=True)
    user_role = db.Column(db.String(32), nullable=True)
    branch_id = db.Column(db.Integer, nullable=True)
    device_id = db.Column(db.String(128), nullable=True)

    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    signature = db.Column(db.String(64), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.log_uid,
            "seq": self.id,
            "event_type": self.event_type,
            "created_at": to_utc_z(self.created_at),
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_role": self.user_role,
            "branch_id": self.branch_id,
            "device_id": self.device_id,
            "before": self.before,
            "after": self.after,
            "reason": self.reason,
            "metadata": self.metadata_json,
            "signature": self.signature,
        }
