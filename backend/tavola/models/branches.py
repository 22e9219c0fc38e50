from __future__ import annotations

from ..extensions import db
from tavola.time_utils import to_utc_z


class WarehouseType:
    MAIN = "MAIN"
    SUB = "SUB"
    KITCHEN = "KITCHEN"
    POINT_OF_SALE = "POINT_OF_SALE"

    ALL = (MAIN, SUB, KITCHEN, POINT_OF_SALE)


class Branch(db.Model):
    """
    A restaurant branch. Every order, stock location and audit record is
    attributed to exactly one branch.

    consumption_warehouse_id is where sale consumption is drawn from when an
    order does not name a warehouse explicitly.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_branches_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    consumption_warehouse_id = db.Column(
        db.Integer,
        db.ForeignKey("warehouses.id", use_alter=True, name="fk_branches_consumption_warehouse"),
        nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    consumption_warehouse = db.relationship("Warehouse", foreign_keys=[consumption_warehouse_id], post_update=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_active": self.is_active,
            "consumption_warehouse_id": self.consumption_warehouse_id,
            "created_at": to_utc_z(self.created_at),
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = (
        db.Index("ix_warehouses_branch_active", "branch_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(32), nullable=False, default=WarehouseType.MAIN)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    branch = db.relationship("Branch", foreign_keys=[branch_id], backref=db.backref("warehouses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "name": self.name,
            "type": self.type,
            "is_active": self.is_active,
        }


class DiningTable(db.Model):
    """Floor-plan table. Dine-in orders must reference one."""
    __tablename__ = "dining_tables"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "label", name="uq_dining_tables_branch_label"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    label = db.Column(db.String(32), nullable=False)
    seats = db.Column(db.Integer, nullable=False, default=4)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "label": self.label,
            "seats": self.seats,
            "is_active": self.is_active,
        }


class DocumentSequence(db.Model):
    """
    Per-branch document counters (order numbers).

    Allocated under a row lock so two terminals never get the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "document_type", name="uq_doc_sequences_branch_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
