# Overview: CRM customers (create, look up).

from __future__ import annotations

from ..extensions import db
from ..models import Customer
from ..validation import ModelValidationPolicy, validate_payload, enforce_rules_customer
from . import audit_service, sync_service
from .audit_service import AuditEventType
from .concurrency import run_atomic
from .permission_service import ActorContext


CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "email", "address", "branch_id"},
    required_on_create={"name"},
)


def list_customers(*, search: str | None = None, limit: int = 100) -> list[Customer]:
    query = db.session.query(Customer)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(db.or_(Customer.name.ilike(like), Customer.phone.ilike(like)))
    return query.order_by(Customer.name.asc()).limit(max(1, min(limit, 500))).all()


def create_customer(*, payload: dict, actor: ActorContext) -> Customer:
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=False)
    enforce_rules_customer(patch)
    patch.setdefault("branch_id", actor.branch_id)

    def _op() -> Customer:
        customer = Customer(**patch)
        db.session.add(customer)
        db.session.flush()

        data = customer.to_dict()
        sync_service.enqueue("customer", "CREATE", data)
        audit_service.record(AuditEventType.CUSTOMER_CREATED, actor=actor, after=data)
        db.session.commit()
        return customer

    return run_atomic(_op)
