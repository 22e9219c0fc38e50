# Overview: Durable replication outbox (enqueue, drain, retry, stats).

"""
Offline Sync Queue

Invariants:
- An item is written in the same transaction as the local mutation it
  replicates; enqueue() never commits.
- Items replay in enqueue (id) order. Within one entity, a later item is never
  sent while an earlier one is unsent: a FAILED or backing-off item blocks the
  rest of its entity.
- An unreachable upstream stops the drain; nothing is dropped.
- Identical unsynced items (same dedupe key and same payload) are stored once.
  Differing updates to the same entity are all kept and replay in order, so the
  last queued one wins upstream.
"""

from __future__ import annotations

import hashlib
import json
import time
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SyncQueueItem, QueueStatus
from tavola.time_utils import utcnow
from .backend_client import (
    UpstreamRejectedError,
    UpstreamUnavailableError,
    get_upstream_client,
)


_ENTITY_ID_KEYS = ("id", "key", "item_id", "order_id", "table_id")


class SyncError(Exception):
    pass


def canonical_json(payload) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_digest(payload) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def extract_entity_id(payload: dict | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in _ENTITY_ID_KEYS:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def build_dedupe_key(entity_type: str, operation: str, payload: dict | None) -> str:
    """entity:operation:<id>, or entity:operation:<payload hash> when the payload has no id."""
    entity_id = extract_entity_id(payload)
    if entity_id is not None:
        return f"{entity_type}:{operation}:{entity_id}"
    return f"{entity_type}:{operation}:{payload_digest(payload or {})[:16]}"


def compute_backoff_seconds(retry_count: int, *, base: float, maximum: float) -> float:
    """min(maximum, base * 2^(retry_count - 1)); retry_count starts at 1."""
    return min(maximum, base * (2 ** max(0, retry_count - 1)))


def idempotency_key_for(item: SyncQueueItem) -> str:
    # Same item -> same key on every retry; a different update to the same
    # entity gets a different key so the upstream does not collapse them.
    return f"{item.dedupe_key}:{item.payload_hash[:16]}"


def enqueue(entity_type: str, operation: str, payload: dict) -> SyncQueueItem:
    """Add a replication item to the current transaction. Caller commits."""
    if not entity_type or not operation:
        raise SyncError("entity_type and operation are required")

    payload = json.loads(canonical_json(payload or {}))
    dedupe_key = build_dedupe_key(entity_type, operation, payload)
    digest = payload_digest(payload)

    existing = db.session.query(SyncQueueItem).filter(
        SyncQueueItem.dedupe_key == dedupe_key,
        SyncQueueItem.payload_hash == digest,
        SyncQueueItem.status.in_([QueueStatus.QUEUED, QueueStatus.FAILED]),
    ).first()
    if existing:
        return existing

    item = SyncQueueItem(
        entity_type=entity_type,
        entity_id=extract_entity_id(payload),
        operation=operation,
        payload=payload,
        dedupe_key=dedupe_key,
        payload_hash=digest,
        status=QueueStatus.QUEUED,
        retry_count=0,
        created_at=utcnow(),
    )
    db.session.add(item)
    db.session.flush()
    return item


def get_queue_stats() -> dict:
    rows = (
        db.session.query(SyncQueueItem.status, db.func.count(SyncQueueItem.id))
        .group_by(SyncQueueItem.status)
        .all()
    )
    counts = {status: count for status, count in rows}
    pending = counts.get(QueueStatus.QUEUED, 0)
    failed = counts.get(QueueStatus.FAILED, 0)
    synced = counts.get(QueueStatus.SYNCED, 0)
    return {
        "total": pending + failed + synced,
        "pending": pending,
        "failed": failed,
        "synced": synced,
    }


def list_items(*, status: str | None = None, limit: int = 100) -> list[SyncQueueItem]:
    query = db.session.query(SyncQueueItem)
    if status:
        query = query.filter(SyncQueueItem.status == status)
    return query.order_by(SyncQueueItem.id.asc()).limit(max(1, min(limit, 500))).all()


def _lane(item: SyncQueueItem) -> tuple[str, str]:
    return (item.entity_type, item.entity_id or item.dedupe_key)


def _blocked_lanes() -> set[tuple[str, str]]:
    failed = db.session.query(SyncQueueItem).filter(SyncQueueItem.status == QueueStatus.FAILED).all()
    return {_lane(item) for item in failed}


def _after_replay(item: SyncQueueItem) -> None:
    if item.entity_type == "order" and item.operation == "CREATE":
        from . import order_service
        order_service.apply_synced_order(int(item.entity_id))


def _after_rejection(item: SyncQueueItem) -> None:
    if item.entity_type == "order":
        from . import order_service
        order_service.mark_order_sync_failed(int(item.entity_id), item.last_error)


def drain_queue(*, client=None, limit: int | None = None) -> dict:
    """
    Replay due QUEUED items in id order.

    Items created while draining (audit records, movements and journal entries
    produced by a post-sync hook) are picked up in the same call.

    Returns counters: attempted, synced, failed, deferred, aborted.
    """
    client = client or get_upstream_client()
    config = current_app.config
    base = float(config.get("SYNC_BASE_RETRY_SECONDS", 2))
    maximum = float(config.get("SYNC_MAX_RETRY_SECONDS", 300))
    if limit is None:
        limit = int(config.get("SYNC_DRAIN_BATCH", 100))

    result = {"attempted": 0, "synced": 0, "failed": 0, "deferred": 0, "aborted": False}
    blocked = _blocked_lanes()
    seen: set[int] = set()

    while result["attempted"] < limit:
        query = db.session.query(SyncQueueItem).filter(SyncQueueItem.status == QueueStatus.QUEUED)
        if seen:
            query = query.filter(SyncQueueItem.id.notin_(seen))
        items = query.order_by(SyncQueueItem.id.asc()).limit(limit).all()
        if not items:
            break

        for item in items:
            seen.add(item.id)
            lane = _lane(item)
            now = utcnow()

            if lane in blocked:
                result["deferred"] += 1
                continue
            if item.next_attempt_at is not None and item.next_attempt_at > now:
                blocked.add(lane)
                result["deferred"] += 1
                continue
            if result["attempted"] >= limit:
                break

            result["attempted"] += 1
            try:
                client.push(
                    item.entity_type,
                    item.operation,
                    item.payload,
                    idempotency_key=idempotency_key_for(item),
                )
            except UpstreamUnavailableError as e:
                item.retry_count = (item.retry_count or 0) + 1
                delay = compute_backoff_seconds(item.retry_count, base=base, maximum=maximum)
                item.next_attempt_at = now + timedelta(seconds=delay)
                item.last_error = str(e)
                db.session.commit()
                current_app.logger.warning(
                    "Upstream unavailable while replaying %s %s #%s (retry %s in %.0fs): %s",
                    item.entity_type, item.operation, item.id, item.retry_count, delay, e,
                )
                result["aborted"] = True
                return result
            except UpstreamRejectedError as e:
                item.status = QueueStatus.FAILED
                item.last_error = str(e)
                _after_rejection(item)
                db.session.commit()
                blocked.add(lane)
                result["failed"] += 1
                current_app.logger.warning("Upstream rejected %s %s #%s: %s", item.entity_type, item.operation, item.id, e)
                continue

            item.status = QueueStatus.SYNCED
            item.synced_at = now
            item.last_error = None
            try:
                _after_replay(item)
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                current_app.logger.exception("Post-sync hook failed for queue item %s", item.id)
                item = db.session.get(SyncQueueItem, item.id)
                item.status = QueueStatus.FAILED
                item.last_error = f"Post-sync hook failed: {e}"
                db.session.commit()
                blocked.add(lane)
                result["failed"] += 1
                continue
            result["synced"] += 1

    return result


def retry_item(item_id: int) -> SyncQueueItem:
    """Put a FAILED item back in the queue for the next drain."""
    item = db.session.get(SyncQueueItem, item_id)
    if not item:
        raise SyncError("Queue item not found")
    if item.status != QueueStatus.FAILED:
        raise SyncError(f"Only FAILED items can be retried (item is {item.status})")

    item.status = QueueStatus.QUEUED
    item.next_attempt_at = None
    item.last_error = None
    if item.entity_type == "order":
        from . import order_service
        order_service.mark_order_sync_pending(int(item.entity_id))
    db.session.commit()
    return item


def watch(*, interval: float, client=None, max_cycles: int | None = None, echo=None) -> int:
    """
    Drain whenever the upstream reports healthy. Returns the number of cycles
    run (only returns when max_cycles is set).
    """
    client = client or get_upstream_client()
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        if client.is_online():
            result = drain_queue(client=client)
            if echo and (result["attempted"] or result["deferred"]):
                echo(result)
        elif echo:
            echo({"online": False})
        if max_cycles is not None and cycles >= max_cycles:
            break
        time.sleep(interval)
    return cycles
