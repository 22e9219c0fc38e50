"""
Offline sync queue tests: dedupe, ordering, backoff, failure lanes, retry.
"""

import pytest

from tavola.extensions import db
from tavola.models import QueueStatus, SyncQueueItem
from tavola.services import sync_service
from tavola.services.sync_service import (
    SyncError,
    build_dedupe_key,
    compute_backoff_seconds,
    idempotency_key_for,
)


def enqueue(entity_type, operation, payload):
    item = sync_service.enqueue(entity_type, operation, payload)
    db.session.commit()
    return item


# =============================================================================
# PURE HELPERS
# =============================================================================

class TestHelpers:

    def test_dedupe_key_uses_entity_id(self):
        assert build_dedupe_key("customer", "UPSERT", {"id": 7, "name": "A"}) == "customer:UPSERT:7"
        assert build_dedupe_key("order", "UPDATE_STATUS", {"order_id": 3}) == "order:UPDATE_STATUS:3"

    def test_dedupe_key_falls_back_to_payload_hash(self):
        a = build_dedupe_key("customer", "CREATE", {"name": "A"})
        b = build_dedupe_key("customer", "CREATE", {"name": "B"})
        assert a.startswith("customer:CREATE:")
        assert a != b

    def test_backoff_doubles_and_caps(self):
        assert compute_backoff_seconds(1, base=2, maximum=300) == 2
        assert compute_backoff_seconds(3, base=2, maximum=300) == 8
        assert compute_backoff_seconds(20, base=2, maximum=300) == 300

    def test_payload_digest_ignores_key_order(self):
        assert sync_service.payload_digest({"a": 1, "b": 2}) == sync_service.payload_digest({"b": 2, "a": 1})


# =============================================================================
# ENQUEUE
# =============================================================================

class TestEnqueue:

    def test_identical_item_stored_once(self, app):
        first = enqueue("customer", "UPSERT", {"id": 1, "name": "Layla"})
        second = enqueue("customer", "UPSERT", {"id": 1, "name": "Layla"})

        assert first.id == second.id
        assert db.session.query(SyncQueueItem).count() == 1

    def test_differing_updates_all_kept(self, app):
        enqueue("customer", "UPSERT", {"id": 1, "name": "Layla"})
        enqueue("customer", "UPSERT", {"id": 1, "name": "Layla H."})

        assert db.session.query(SyncQueueItem).count() == 2

    def test_synced_item_does_not_absorb_new_copy(self, app):
        enqueue("customer", "UPSERT", {"id": 1, "name": "Layla"})
        sync_service.drain_queue()
        enqueue("customer", "UPSERT", {"id": 1, "name": "Layla"})

        assert db.session.query(SyncQueueItem).count() == 2

    def test_entity_type_required(self, app):
        with pytest.raises(SyncError):
            sync_service.enqueue("", "CREATE", {})

    def test_idempotency_key_stable_per_item(self, app):
        a = enqueue("customer", "UPSERT", {"id": 1, "name": "Layla"})
        b = enqueue("customer", "UPSERT", {"id": 1, "name": "Layla H."})

        assert idempotency_key_for(a) == idempotency_key_for(a)
        assert idempotency_key_for(a) != idempotency_key_for(b)
        assert idempotency_key_for(a).startswith("customer:UPSERT:1:")


# =============================================================================
# DRAIN
# =============================================================================

class TestDrain:

    def test_replays_in_enqueue_order(self, app, upstream):
        enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        enqueue("menu_item", "UPSERT", {"id": 4, "price_cents": 100})
        enqueue("customer", "UPSERT", {"id": 1, "name": "v2"})

        result = sync_service.drain_queue()

        assert result["synced"] == 3
        assert [r["payload"].get("name") or r["payload"].get("price_cents") for r in upstream.received] == [
            "v1", 100, "v2",
        ]
        assert upstream.received[0]["idempotency_key"].startswith("customer:UPSERT:1:")
        assert sync_service.get_queue_stats() == {"total": 3, "pending": 0, "failed": 0, "synced": 3}

    def test_offline_stops_and_keeps_everything(self, app, upstream):
        enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        enqueue("customer", "UPSERT", {"id": 2, "name": "v1"})
        upstream.mode = "offline"

        result = sync_service.drain_queue()

        assert result["aborted"] is True
        assert result["attempted"] == 1
        items = db.session.query(SyncQueueItem).order_by(SyncQueueItem.id).all()
        assert [i.status for i in items] == [QueueStatus.QUEUED, QueueStatus.QUEUED]
        assert items[0].retry_count == 1
        assert items[0].last_error
        assert items[1].retry_count == 0

    def test_server_error_is_retryable(self, app, upstream):
        enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        upstream.mode = "error"

        result = sync_service.drain_queue()
        assert result["aborted"] is True
        assert db.session.query(SyncQueueItem).one().status == QueueStatus.QUEUED

    def test_redirect_is_not_an_acknowledgement(self, app, upstream):
        enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        upstream.mode = "redirect"

        result = sync_service.drain_queue()

        item = db.session.query(SyncQueueItem).one()
        assert result["aborted"] is True
        assert item.status == QueueStatus.QUEUED
        assert item.retry_count == 1
        assert "301" in item.last_error

    def test_backoff_defers_until_due(self, app, upstream):
        app.config["SYNC_BASE_RETRY_SECONDS"] = 60
        enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        upstream.mode = "offline"
        sync_service.drain_queue()

        upstream.mode = "online"
        result = sync_service.drain_queue()

        assert result["attempted"] == 0
        assert result["deferred"] == 1
        assert upstream.received == []

    def test_rejection_blocks_later_items_of_same_entity(self, app, upstream):
        first = enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        enqueue("customer", "UPSERT", {"id": 1, "name": "v2"})
        upstream.mode = "reject"

        result = sync_service.drain_queue()
        assert result["failed"] == 1
        assert result["deferred"] == 1
        assert db.session.get(SyncQueueItem, first.id).status == QueueStatus.FAILED

        upstream.mode = "online"
        enqueue("customer", "UPSERT", {"id": 2, "name": "other"})
        result = sync_service.drain_queue()
        # Entity 1 stays blocked behind its failed item; entity 2 is independent
        assert result["synced"] == 1
        assert result["deferred"] == 1

        sync_service.retry_item(first.id)
        result = sync_service.drain_queue()
        assert result["synced"] == 2
        assert [r["payload"]["name"] for r in upstream.received] == ["other", "v1", "v2"]

    def test_unknown_entity_is_rejected(self, app):
        item = enqueue("widget", "CREATE", {"id": 1})
        sync_service.drain_queue()
        assert db.session.get(SyncQueueItem, item.id).status == QueueStatus.FAILED

    def test_retry_only_failed_items(self, app):
        item = enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        with pytest.raises(SyncError):
            sync_service.retry_item(item.id)
        with pytest.raises(SyncError):
            sync_service.retry_item(9999)

    def test_limit_caps_attempts(self, app, upstream):
        for n in range(5):
            enqueue("customer", "UPSERT", {"id": n + 1, "name": "x"})

        result = sync_service.drain_queue(limit=2)
        assert result["attempted"] == 2
        assert sync_service.get_queue_stats()["pending"] == 3

    def test_watch_drains_when_online(self, app, upstream):
        enqueue("customer", "UPSERT", {"id": 1, "name": "v1"})
        seen = []

        cycles = sync_service.watch(interval=0, max_cycles=1, echo=seen.append)

        assert cycles == 1
        assert seen and seen[0]["synced"] == 1

    def test_watch_reports_offline(self, app, upstream):
        upstream.mode = "offline"
        seen = []
        sync_service.watch(interval=0, max_cycles=1, echo=seen.append)
        assert seen == [{"online": False}]
