# Overview: Signed, append-only audit trail with tamper verification.

"""
Audit Log

Every record is signed with HMAC-SHA256 (key AUDIT_HMAC_SECRET) over the
canonical JSON (sorted keys, compact separators) of all of its fields except
the signature. Changing any stored field, the timestamp included, makes
verify() return False.

Records are written in the caller's transaction and queued for replication
in the same transaction; a failed replication leaves them queued.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid

from flask import current_app

from ..extensions import db
from ..models import AuditLog
from tavola.time_utils import to_signing_timestamp, utcnow
from . import sync_service
from .permission_service import ActorContext


class AuditEventType:
    POS_ORDER_PLACEMENT = "POS_ORDER_PLACEMENT"
    POS_VOID = "POS_VOID"
    POS_DISCOUNT = "POS_DISCOUNT"
    ORDER_STATUS_CHANGE = "ORDER_STATUS_CHANGE"
    INVENTORY_ADJUSTMENT = "INVENTORY_ADJUSTMENT"
    INVENTORY_TRANSFER = "INVENTORY_TRANSFER"
    INVENTORY_RECEIPT = "INVENTORY_RECEIPT"
    INVENTORY_WASTE = "INVENTORY_WASTE"
    PO_STATUS_CHANGE = "PO_STATUS_CHANGE"
    ACCOUNTING_ADJUSTMENT = "ACCOUNTING_ADJUSTMENT"
    PERIOD_CLOSE = "PERIOD_CLOSE"
    SECURITY_PERMISSION_CHANGE = "SECURITY_PERMISSION_CHANGE"
    SECURITY_LOGIN = "SECURITY_LOGIN"
    SETTINGS_CHANGE = "SETTINGS_CHANGE"
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    AI_INSIGHT_GENERATED = "AI_INSIGHT_GENERATED"
    AI_ANOMALY_DETECTED = "AI_ANOMALY_DETECTED"
    AI_ACTION_EXECUTED = "AI_ACTION_EXECUTED"

    ALL = (
        POS_ORDER_PLACEMENT, POS_VOID, POS_DISCOUNT, ORDER_STATUS_CHANGE,
        INVENTORY_ADJUSTMENT, INVENTORY_TRANSFER, INVENTORY_RECEIPT, INVENTORY_WASTE,
        PO_STATUS_CHANGE, ACCOUNTING_ADJUSTMENT, PERIOD_CLOSE,
        SECURITY_PERMISSION_CHANGE, SECURITY_LOGIN, SETTINGS_CHANGE,
        CUSTOMER_CREATED, AI_INSIGHT_GENERATED, AI_ANOMALY_DETECTED, AI_ACTION_EXECUTED,
    )


class AuditError(Exception):
    pass


def _jsonable(value):
    """Normalize to what the JSON column will hand back (Decimals become strings)."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def signing_payload(log: AuditLog) -> dict:
    return {
        "id": log.log_uid,
        "event_type": log.event_type,
        "created_at": to_signing_timestamp(log.created_at),
        "user_id": log.user_id,
        "user_name": log.user_name,
        "user_role": log.user_role,
        "branch_id": log.branch_id,
        "device_id": log.device_id,
        "before": log.before,
        "after": log.after,
        "reason": log.reason,
        "metadata": log.metadata_json,
    }


def compute_signature(payload: dict, *, secret: str | None = None) -> str:
    key = secret if secret is not None else current_app.config["AUDIT_HMAC_SECRET"]
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def record(
    event_type: str,
    *,
    actor: ActorContext,
    before=None,
    after=None,
    reason: str | None = None,
    metadata: dict | None = None,
    branch_id: int | None = None,
) -> AuditLog:
    """
    Append a signed audit record and queue it for replication. Caller commits.

    branch_id overrides the actor's branch for records about another branch's
    data (SUPER_ADMIN acting across branches).
    """
    if event_type not in AuditEventType.ALL:
        raise AuditError(f"Unknown audit event type: {event_type}")

    log = AuditLog(
        log_uid=str(uuid.uuid4()),
        event_type=event_type,
        created_at=utcnow(),
        user_id=actor.user_id,
        user_name=actor.name,
        user_role=actor.role,
        branch_id=branch_id if branch_id is not None else actor.branch_id,
        device_id=actor.device_id,
        before=_jsonable(before),
        after=_jsonable(after),
        reason=reason,
        metadata_json=_jsonable(metadata),
    )
    log.signature = compute_signature(signing_payload(log))

    db.session.add(log)
    db.session.flush()

    sync_service.enqueue("audit_log", "CREATE", {**signing_payload(log), "signature": log.signature})
    return log


def verify(log: AuditLog, *, secret: str | None = None) -> bool:
    expected = compute_signature(signing_payload(log), secret=secret)
    return hmac.compare_digest(expected, log.signature or "")


def get_log(log_id) -> AuditLog | None:
    """Look up by row id or by the shared uuid."""
    if isinstance(log_id, int) or str(log_id).isdigit():
        return db.session.get(AuditLog, int(log_id))
    return db.session.query(AuditLog).filter_by(log_uid=str(log_id)).first()


def list_logs(
    *,
    branch_id: int | None = None,
    event_type: str | None = None,
    user_id: int | None = None,
    start=None,
    end=None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    """Most recent first, each with a `tampered` flag for forensics views."""
    query = db.session.query(AuditLog)
    if branch_id is not None:
        query = query.filter(AuditLog.branch_id == branch_id)
    if event_type:
        query = query.filter(AuditLog.event_type == event_type)
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    if start is not None:
        query = query.filter(AuditLog.created_at >= start)
    if end is not None:
        query = query.filter(AuditLog.created_at <= end)

    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    logs = query.order_by(AuditLog.id.desc()).offset(offset).limit(limit).all()

    rows = []
    for log in logs:
        data = log.to_dict()
        data["tampered"] = not verify(log)
        rows.append(data)
    return rows


def find_tampered(*, limit: int | None = None) -> list[AuditLog]:
    query = db.session.query(AuditLog).order_by(AuditLog.id.asc())
    if limit:
        query = query.limit(limit)
    return [log for log in query.all() if not verify(log)]
