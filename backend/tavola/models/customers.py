from __future__ import annotations

from ..extensions import db
from tavola.time_utils import to_utc_z


class Customer(db.Model):
    """CRM customer. Delivery orders must reference one."""
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_phone", "phone"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self, *, include_sensitive: bool = True) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone if include_sensitive else None,
            "email": self.email if include_sensitive else None,
            "address": self.address if include_sensitive else None,
            "branch_id": self.branch_id,
            "created_at": to_utc_z(self.created_at),
        }
