"""
Financial ledger tests: posting rules, the pure account tree, trial balance,
period locks and reconciliations.
"""

from datetime import timedelta

import pytest

from tavola.extensions import db
from tavola.models import AuditLog, JournalEntry, SyncQueueItem
from tavola.services import ledger_service
from tavola.services.audit_service import AuditEventType
from tavola.services.ledger_service import (
    AccountNode,
    LedgerError,
    PeriodLockedError,
    apply_entry_to_tree,
    build_account_tree,
    find_node,
    rollup_balance,
)
from tavola.time_utils import utcnow
from tavola.validation import ConflictError


def balance(code: str) -> int:
    return ledger_service.get_account_by_code(code).balance_cents


def post(amount_cents=500, debit="1110", credit="4100", **extra):
    entry = ledger_service.post_entry(
        debit_account_code=debit,
        credit_account_code=credit,
        amount_cents=amount_cents,
        description="Test entry",
        **extra,
    )
    db.session.commit()
    return entry


# =============================================================================
# POSTING
# =============================================================================

class TestPosting:

    def test_entry_moves_exactly_two_balances(self, seed):
        post(500)

        assert balance("1110") == 500
        assert balance("4100") == -500
        others = [a.balance_cents for a in ledger_service.list_accounts() if a.code not in ("1110", "4100")]
        assert set(others) == {0}

    def test_entry_is_queued(self, seed):
        entry = post(500)
        item = db.session.query(SyncQueueItem).filter_by(entity_type="journal_entry").one()
        assert item.entity_id == str(entry.id)

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_amount_must_be_positive_integer(self, seed, amount):
        with pytest.raises(LedgerError):
            post(amount)

    def test_same_account_refused(self, seed):
        with pytest.raises(LedgerError):
            post(100, debit="1110", credit="1110")

    def test_unknown_account_refused(self, seed):
        with pytest.raises(LedgerError):
            post(100, debit="9999")

    def test_description_required(self, seed):
        with pytest.raises(LedgerError):
            ledger_service.post_entry(
                debit_account_code="1110", credit_account_code="4100", amount_cents=1, description="  "
            )

    def test_manual_entry_is_audited(self, seed, actors):
        entry = ledger_service.post_manual_entry(
            actor=actors["admin"],
            reason="Opening float",
            debit_account_code="1110",
            credit_account_code="3000",
            amount_cents=10000,
            description="Opening cash float",
        )

        assert entry.source == ledger_service.EntrySource.MANUAL
        log = db.session.query(AuditLog).filter_by(event_type=AuditEventType.ACCOUNTING_ADJUSTMENT).one()
        assert log.reason == "Opening float"

    def test_helpers_skip_zero_amounts(self, seed):
        assert ledger_service.post_wastage(reference_id="W-1", amount_cents=0) is None
        assert ledger_service.post_purchase_receipt(reference_id="P-1", amount_cents=0) is None
        assert ledger_service.post_inventory_adjustment(reference_id="A-1", value_cents=0) is None
        assert db.session.query(JournalEntry).count() == 0

    def test_trial_balance_always_balances(self, seed):
        post(500)
        post(120, debit="5110", credit="1210")
        post(80, debit="1210", credit="2100")

        report = ledger_service.trial_balance()
        assert report["balanced"] is True
        assert report["total_debits_cents"] == report["total_credits_cents"] == 620
        assert sum(row["balance_cents"] for row in report["accounts"]) == 0


# =============================================================================
# ACCOUNT TREE (PURE)
# =============================================================================

class TestAccountTree:

    ACCOUNTS = [
        {"id": 1, "code": "1000", "name": "Assets", "type": "ASSET", "parent_id": None, "balance_cents": 0},
        {"id": 2, "code": "1100", "name": "Cash", "type": "ASSET", "parent_id": 1, "balance_cents": 300},
        {"id": 3, "code": "1200", "name": "Stock", "type": "ASSET", "parent_id": 1, "balance_cents": 200},
        {"id": 4, "code": "4000", "name": "Revenue", "type": "REVENUE", "parent_id": None, "balance_cents": -500},
    ]

    def test_tree_rollup(self):
        tree = build_account_tree(self.ACCOUNTS)

        assert [root.code for root in tree] == ["1000", "4000"]
        assert rollup_balance(find_node(tree, "1000")) == 500
        assert find_node(tree, "1000").balance_cents == 0

    def test_apply_entry_returns_new_tree(self):
        tree = build_account_tree(self.ACCOUNTS)
        updated = apply_entry_to_tree(tree, 2, 4, 50)

        assert find_node(updated, "1100").balance_cents == 350
        assert find_node(updated, "4000").balance_cents == -550
        assert find_node(tree, "1100").balance_cents == 300
        # Untouched subtree is shared
        assert find_node(updated, "1200") is find_node(tree, "1200")

    def test_apply_entry_same_account_refused(self):
        with pytest.raises(LedgerError):
            apply_entry_to_tree(build_account_tree(self.ACCOUNTS), 2, 2, 50)

    def test_node_serializes_with_rollup(self):
        node = AccountNode(id=9, code="9", name="Leaf", type="ASSET", balance_cents=7)
        assert node.to_dict()["rollup_cents"] == 7

    def test_preview_does_not_touch_database(self, seed):
        tree = ledger_service.preview_entry(debit_account_code="1110", credit_account_code="4100", amount_cents=250)

        assert rollup_balance(find_node(tree, "1000")) == 250
        assert balance("1110") == 0
        assert db.session.query(JournalEntry).count() == 0


# =============================================================================
# PERIOD CLOSE
# =============================================================================

class TestPeriodClose:

    def test_closed_period_refuses_backdated_entries(self, seed, actors):
        now = utcnow()
        ledger_service.close_period(
            period_start=now - timedelta(days=2), period_end=now - timedelta(days=1), actor=actors["admin"]
        )

        with pytest.raises(PeriodLockedError):
            post(100, entry_date=now - timedelta(days=1, hours=2))
        db.session.rollback()

        post(100)
        assert balance("1110") == 100

    def test_period_lock_is_a_conflict(self):
        assert issubclass(PeriodLockedError, ConflictError)

    def test_overlapping_close_refused(self, seed, actors):
        now = utcnow()
        ledger_service.close_period(
            period_start=now - timedelta(days=10), period_end=now - timedelta(days=5), actor=actors["admin"]
        )
        with pytest.raises(PeriodLockedError):
            ledger_service.close_period(
                period_start=now - timedelta(days=6), period_end=now - timedelta(days=3), actor=actors["admin"]
            )

    def test_end_before_start_refused(self, seed, actors):
        now = utcnow()
        with pytest.raises(LedgerError):
            ledger_service.close_period(period_start=now, period_end=now - timedelta(days=1), actor=actors["admin"])

    def test_close_totals_and_audit(self, seed, actors):
        post(300, entry_date=utcnow() - timedelta(days=3))
        now = utcnow()
        close = ledger_service.close_period(
            period_start=now - timedelta(days=4), period_end=now - timedelta(days=2), actor=actors["admin"]
        )

        assert close.total_debits_cents == 300
        assert close.total_credits_cents == 300
        assert db.session.query(AuditLog).filter_by(event_type=AuditEventType.PERIOD_CLOSE).count() == 1


# =============================================================================
# RECONCILIATION
# =============================================================================

class TestReconciliation:

    def test_resolve_with_adjustment_matches_statement(self, seed, actors):
        post(500)
        rec = ledger_service.create_reconciliation(
            account_code="1110", statement_balance_cents=450, actor=actors["admin"]
        )
        assert rec.variance_cents == -50

        resolved = ledger_service.resolve_reconciliation(
            reconciliation_id=rec.id,
            actor=actors["admin"],
            post_adjustment=True,
            offset_account_code="5110",
            notes="Till short",
        )

        assert resolved.status == "RESOLVED"
        assert balance("1110") == 450
        assert balance("5110") == 50

    def test_cannot_resolve_twice(self, seed, actors):
        rec = ledger_service.create_reconciliation(account_code="1110", statement_balance_cents=0, actor=actors["admin"])
        ledger_service.resolve_reconciliation(reconciliation_id=rec.id, actor=actors["admin"])

        with pytest.raises(ConflictError):
            ledger_service.resolve_reconciliation(reconciliation_id=rec.id, actor=actors["admin"])

    def test_adjustment_needs_offset_account(self, seed, actors):
        post(500)
        rec = ledger_service.create_reconciliation(account_code="1110", statement_balance_cents=0, actor=actors["admin"])

        with pytest.raises(LedgerError):
            ledger_service.resolve_reconciliation(reconciliation_id=rec.id, actor=actors["admin"], post_adjustment=True)
