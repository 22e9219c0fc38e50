# Overview: Double-entry financial ledger, chart of accounts and period controls.

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Optional

from ..extensions import db
from ..models import FinancialAccount, JournalEntry, PeriodClose, Reconciliation, AccountType
from ..validation import ValidationError, ConflictError, NotFoundError
from tavola.time_utils import utcnow
from . import audit_service, sync_service
from .audit_service import AuditEventType
from .concurrency import lock_for_update, run_atomic
from .permission_service import ActorContext
"""
Financial Ledger Invariants (authoritative)

- Journal entries are append-only; there is no update or delete path.
- Posting changes exactly two balances: +amount on the debit account,
  -amount on the credit account. Parents store no rollups; subtree totals are
  computed on read (rollup_balance).
- Sum of all balances is always zero, so the trial balance always balances.
- No entry may be dated on or before the end of the latest closed period.
- Zero amounts from the posting helpers are skipped, never posted.
"""


class LedgerError(ValidationError):
    pass


class PeriodLockedError(ConflictError):
    pass


class EntrySource:
    ORDER_REVENUE = "ORDER_REVENUE"
    ORDER_COGS = "ORDER_COGS"
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    WASTAGE = "WASTAGE"
    INVENTORY_ADJUSTMENT = "INVENTORY_ADJUSTMENT"
    MANUAL = "MANUAL"
    RECONCILIATION = "RECONCILIATION"


# (code, name, type, parent_code)
DEFAULT_CHART_OF_ACCOUNTS = (
    ("1000", "Assets", AccountType.ASSET, None),
    ("1100", "Cash & Cash Equivalents", AccountType.ASSET, "1000"),
    ("1110", "Cashier Main", AccountType.ASSET, "1100"),
    ("1200", "Inventory Stock", AccountType.ASSET, "1000"),
    ("1210", "Raw Materials", AccountType.ASSET, "1200"),
    ("1220", "Finished Goods", AccountType.ASSET, "1200"),
    ("2000", "Liabilities", AccountType.LIABILITY, None),
    ("2100", "Accounts Payable", AccountType.LIABILITY, "2000"),
    ("3000", "Equity", AccountType.EQUITY, None),
    ("4000", "Revenue", AccountType.REVENUE, None),
    ("4100", "Sales", AccountType.REVENUE, "4000"),
    ("5000", "Expenses", AccountType.EXPENSE, None),
    ("5110", "Inventory Cost", AccountType.EXPENSE, "5000"),
)

CASHIER_ACCOUNT = "1110"
SALES_ACCOUNT = "4100"
RAW_MATERIALS_ACCOUNT = "1210"
PAYABLES_ACCOUNT = "2100"
INVENTORY_COST_ACCOUNT = "5110"


def ensure_chart_of_accounts() -> int:
    """Create any missing default accounts. Idempotent. Returns how many were created."""
    by_code = {a.code: a for a in db.session.query(FinancialAccount).all()}
    created = 0
    for code, name, acc_type, parent_code in DEFAULT_CHART_OF_ACCOUNTS:
        if code in by_code:
            continue
        parent = by_code.get(parent_code) if parent_code else None
        account = FinancialAccount(
            code=code,
            name=name,
            type=acc_type,
            parent_id=parent.id if parent else None,
            balance_cents=0,
        )
        db.session.add(account)
        db.session.flush()
        by_code[code] = account
        created += 1
    db.session.commit()
    return created


def get_account_by_code(code: str) -> FinancialAccount | None:
    return db.session.query(FinancialAccount).filter_by(code=str(code)).first()


def list_accounts() -> list[FinancialAccount]:
    return db.session.query(FinancialAccount).order_by(FinancialAccount.code.asc()).all()


# =============================================================================
# Pure account-tree functions (no session access)
# =============================================================================

@dataclass(frozen=True)
class AccountNode:
    id: int
    code: str
    name: str
    type: str
    balance_cents: int
    children: tuple = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "balance_cents": self.balance_cents,
            "rollup_cents": rollup_balance(self),
            "children": [c.to_dict() for c in self.children],
        }


def _field(account, name):
    if isinstance(account, dict):
        return account.get(name)
    return getattr(account, name)


def build_account_tree(accounts: Iterable) -> tuple[AccountNode, ...]:
    """
    Build the chart as a forest of AccountNode roots, ordered by code.
    Accepts FinancialAccount rows or their to_dict() form.
    """
    rows = list(accounts)
    children_of: dict = {}
    for acc in rows:
        children_of.setdefault(_field(acc, "parent_id"), []).append(acc)

    ids = {_field(acc, "id") for acc in rows}

    def _build(acc) -> AccountNode:
        kids = sorted(children_of.get(_field(acc, "id"), []), key=lambda a: _field(a, "code"))
        return AccountNode(
            id=_field(acc, "id"),
            code=_field(acc, "code"),
            name=_field(acc, "name"),
            type=_field(acc, "type"),
            balance_cents=int(_field(acc, "balance_cents") or 0),
            children=tuple(_build(k) for k in kids),
        )

    roots = [acc for acc in rows if _field(acc, "parent_id") not in ids]
    return tuple(_build(acc) for acc in sorted(roots, key=lambda a: _field(a, "code")))


def apply_entry_to_tree(tree: tuple, debit_id: int, credit_id: int, amount_cents: int) -> tuple:
    """
    Return a new forest with +amount on the debit node and -amount on the
    credit node. Subtrees containing neither node are shared, not copied.
    """
    if debit_id == credit_id:
        raise LedgerError("Debit and credit accounts must differ")
    deltas = {debit_id: amount_cents, credit_id: -amount_cents}

    def _apply(node: AccountNode) -> AccountNode:
        new_children = tuple(_apply(c) for c in node.children)
        delta = deltas.get(node.id, 0)
        if delta == 0 and all(a is b for a, b in zip(new_children, node.children)):
            return node
        return replace(node, balance_cents=node.balance_cents + delta, children=new_children)

    return tuple(_apply(root) for root in tree)


def rollup_balance(node: AccountNode) -> int:
    return node.balance_cents + sum(rollup_balance(c) for c in node.children)


def find_node(tree: tuple, code: str) -> AccountNode | None:
    for node in tree:
        if node.code == code:
            return node
        found = find_node(node.children, code)
        if found:
            return found
    return None


# =============================================================================
# Posting
# =============================================================================

def latest_closed_through() -> Optional[datetime]:
    return db.session.query(db.func.max(PeriodClose.period_end)).scalar()


def post_entry(
    *,
    debit_account_code: str,
    credit_account_code: str,
    amount_cents: int,
    description: str,
    reference_id: str | None = None,
    source: str | None = None,
    entry_date: datetime | None = None,
    actor: ActorContext | None = None,
) -> JournalEntry:
    """
    Append one journal entry and apply it to the two account balances.
    Queues the entry for replication. Caller commits.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise LedgerError("amount_cents must be an integer")
    if amount_cents <= 0:
        raise LedgerError("amount_cents must be > 0")
    if not (description or "").strip():
        raise LedgerError("description is required")
    if str(debit_account_code) == str(credit_account_code):
        raise LedgerError("Debit and credit accounts must differ")

    entry_date = entry_date or utcnow()
    closed_through = latest_closed_through()
    if closed_through is not None and entry_date <= closed_through:
        raise PeriodLockedError(
            f"Accounting period is closed through {closed_through.isoformat()}"
        )

    accounts = lock_for_update(
        db.session.query(FinancialAccount).filter(
            FinancialAccount.code.in_([str(debit_account_code), str(credit_account_code)])
        )
    ).all()
    by_code = {a.code: a for a in accounts}
    debit = by_code.get(str(debit_account_code))
    credit = by_code.get(str(credit_account_code))
    if debit is None:
        raise LedgerError(f"Unknown account code: {debit_account_code}")
    if credit is None:
        raise LedgerError(f"Unknown account code: {credit_account_code}")

    entry = JournalEntry(
        entry_date=entry_date,
        description=description.strip(),
        debit_account_id=debit.id,
        credit_account_id=credit.id,
        amount_cents=amount_cents,
        reference_id=str(reference_id) if reference_id is not None else None,
        source=source,
        created_by_user_id=actor.user_id if actor else None,
    )
    debit.balance_cents = (debit.balance_cents or 0) + amount_cents
    credit.balance_cents = (credit.balance_cents or 0) - amount_cents

    db.session.add(entry)
    db.session.flush()

    sync_service.enqueue("journal_entry", "CREATE", entry.to_dict())
    return entry


def post_manual_entry(*, actor: ActorContext, reason: str | None = None, **entry_fields) -> JournalEntry:
    """Manual journal entry from the finance screen: posts, audits and commits."""
    def _op() -> JournalEntry:
        entry = post_entry(source=EntrySource.MANUAL, actor=actor, **entry_fields)
        audit_service.record(
            AuditEventType.ACCOUNTING_ADJUSTMENT,
            actor=actor,
            after=entry.to_dict(),
            reason=reason,
        )
        db.session.commit()
        return entry

    return run_atomic(_op)


def list_entries(
    *,
    account_code: str | None = None,
    reference_id: str | None = None,
    source: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[JournalEntry]:
    """Most recent first."""
    query = db.session.query(JournalEntry)
    if account_code:
        account = get_account_by_code(account_code)
        if not account:
            return []
        query = query.filter(
            db.or_(JournalEntry.debit_account_id == account.id, JournalEntry.credit_account_id == account.id)
        )
    if reference_id:
        query = query.filter(JournalEntry.reference_id == str(reference_id))
    if source:
        query = query.filter(JournalEntry.source == source)
    limit = max(1, min(limit, 500))
    return (
        query.order_by(JournalEntry.entry_date.desc(), JournalEntry.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )


def preview_entry(*, debit_account_code: str, credit_account_code: str, amount_cents: int) -> tuple:
    """Chart tree as it would look after posting, without touching the database."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise LedgerError("amount_cents must be a positive integer")
    debit = get_account_by_code(debit_account_code)
    credit = get_account_by_code(credit_account_code)
    if debit is None:
        raise LedgerError(f"Unknown account code: {debit_account_code}")
    if credit is None:
        raise LedgerError(f"Unknown account code: {credit_account_code}")
    tree = build_account_tree(list_accounts())
    return apply_entry_to_tree(tree, debit.id, credit.id, amount_cents)


# Posting helpers. Each skips zero amounts and returns None in that case.

def post_order_revenue(*, order, actor: ActorContext | None = None) -> JournalEntry | None:
    if not order.total_cents or order.total_cents <= 0:
        return None
    return post_entry(
        debit_account_code=CASHIER_ACCOUNT,
        credit_account_code=SALES_ACCOUNT,
        amount_cents=int(order.total_cents),
        description=f"POS Order {order.order_number}",
        reference_id=str(order.id),
        source=EntrySource.ORDER_REVENUE,
        actor=actor,
    )


def post_order_cogs(*, order, cogs_cents: int, actor: ActorContext | None = None) -> JournalEntry | None:
    if not cogs_cents or cogs_cents <= 0:
        return None
    return post_entry(
        debit_account_code=INVENTORY_COST_ACCOUNT,
        credit_account_code=RAW_MATERIALS_ACCOUNT,
        amount_cents=int(cogs_cents),
        description=f"COGS Order {order.order_number}",
        reference_id=str(order.id),
        source=EntrySource.ORDER_COGS,
        actor=actor,
    )


def post_purchase_receipt(*, reference_id: str, amount_cents: int, actor: ActorContext | None = None) -> JournalEntry | None:
    if not amount_cents or amount_cents <= 0:
        return None
    return post_entry(
        debit_account_code=RAW_MATERIALS_ACCOUNT,
        credit_account_code=PAYABLES_ACCOUNT,
        amount_cents=int(amount_cents),
        description=f"Purchase Receipt {reference_id}",
        reference_id=reference_id,
        source=EntrySource.PURCHASE_RECEIPT,
        actor=actor,
    )


def post_wastage(*, reference_id: str, amount_cents: int, actor: ActorContext | None = None) -> JournalEntry | None:
    if not amount_cents or amount_cents <= 0:
        return None
    return post_entry(
        debit_account_code=INVENTORY_COST_ACCOUNT,
        credit_account_code=RAW_MATERIALS_ACCOUNT,
        amount_cents=int(amount_cents),
        description=f"Wastage {reference_id}",
        reference_id=reference_id,
        source=EntrySource.WASTAGE,
        actor=actor,
    )


def post_inventory_adjustment(*, reference_id: str, value_cents: int, actor: ActorContext | None = None) -> JournalEntry | None:
    """
    value_cents > 0: stock was written off (debit 5110 / credit 1210).
    value_cents < 0: stock was found (reversal, debit 1210 / credit 5110).
    """
    if not value_cents:
        return None
    if value_cents > 0:
        debit, credit, label = INVENTORY_COST_ACCOUNT, RAW_MATERIALS_ACCOUNT, "Inventory Adjustment"
    else:
        debit, credit, label = RAW_MATERIALS_ACCOUNT, INVENTORY_COST_ACCOUNT, "Inventory Adjustment Reversal"
    return post_entry(
        debit_account_code=debit,
        credit_account_code=credit,
        amount_cents=abs(int(value_cents)),
        description=f"{label} {reference_id}",
        reference_id=reference_id,
        source=EntrySource.INVENTORY_ADJUSTMENT,
        actor=actor,
    )


# =============================================================================
# Reporting and period controls
# =============================================================================

def trial_balance() -> dict:
    """Positive balances are debits, negative balances are credits."""
    rows = []
    total_debits = 0
    total_credits = 0
    for account in list_accounts():
        balance = int(account.balance_cents or 0)
        debit = balance if balance > 0 else 0
        credit = -balance if balance < 0 else 0
        total_debits += debit
        total_credits += credit
        rows.append({
            "code": account.code,
            "name": account.name,
            "type": account.type,
            "balance_cents": balance,
            "debit_cents": debit,
            "credit_cents": credit,
        })
    return {
        "accounts": rows,
        "total_debits_cents": total_debits,
        "total_credits_cents": total_credits,
        "balanced": total_debits == total_credits,
    }


def close_period(
    *,
    period_start: datetime,
    period_end: datetime,
    actor: ActorContext,
    notes: str | None = None,
) -> PeriodClose:
    """Close [period_start, period_end]; later posting dated on or before period_end is refused."""
    def _op() -> PeriodClose:
        if period_start is None or period_end is None:
            raise LedgerError("period_start and period_end are required")
        if period_end < period_start:
            raise LedgerError("period_end must be on or after period_start")

        overlapping = db.session.query(PeriodClose).filter(
            PeriodClose.period_start <= period_end,
            PeriodClose.period_end >= period_start,
        ).first()
        if overlapping:
            raise PeriodLockedError(f"Period overlaps closed period #{overlapping.id}")

        total = db.session.query(db.func.coalesce(db.func.sum(JournalEntry.amount_cents), 0)).filter(
            JournalEntry.entry_date >= period_start,
            JournalEntry.entry_date <= period_end,
        ).scalar()

        close = PeriodClose(
            period_start=period_start,
            period_end=period_end,
            total_debits_cents=int(total or 0),
            total_credits_cents=int(total or 0),
            closed_by_user_id=actor.user_id,
            closed_at=utcnow(),
            notes=notes,
        )
        db.session.add(close)
        db.session.flush()

        audit_service.record(AuditEventType.PERIOD_CLOSE, actor=actor, after=close.to_dict(), reason=notes)
        db.session.commit()
        return close

    return run_atomic(_op)


def create_reconciliation(
    *,
    account_code: str,
    statement_balance_cents: int,
    actor: ActorContext,
    statement_date: datetime | None = None,
    notes: str | None = None,
) -> Reconciliation:
    account = get_account_by_code(account_code)
    if not account:
        raise LedgerError(f"Unknown account code: {account_code}")
    if isinstance(statement_balance_cents, bool) or not isinstance(statement_balance_cents, int):
        raise LedgerError("statement_balance_cents must be an integer")

    book = int(account.balance_cents or 0)
    rec = Reconciliation(
        account_id=account.id,
        statement_date=statement_date or utcnow(),
        statement_balance_cents=statement_balance_cents,
        book_balance_cents=book,
        variance_cents=statement_balance_cents - book,
        status="OPEN",
        notes=notes,
        created_by_user_id=actor.user_id,
    )
    db.session.add(rec)
    db.session.commit()
    return rec


def resolve_reconciliation(
    *,
    reconciliation_id: int,
    actor: ActorContext,
    post_adjustment: bool = False,
    offset_account_code: str | None = None,
    notes: str | None = None,
) -> Reconciliation:
    """
    Mark a reconciliation RESOLVED, optionally posting the variance against
    offset_account_code so the book balance matches the statement.
    """
    def _op() -> Reconciliation:
        rec = db.session.get(Reconciliation, reconciliation_id)
        if not rec:
            raise NotFoundError("Reconciliation not found")
        if rec.status != "OPEN":
            raise ConflictError("Reconciliation is already resolved")

        before = rec.to_dict()
        if post_adjustment and rec.variance_cents:
            if not offset_account_code:
                raise LedgerError("offset_account_code is required to post an adjustment")
            account_code = rec.account.code
            if rec.variance_cents > 0:
                debit, credit = account_code, offset_account_code
            else:
                debit, credit = offset_account_code, account_code
            entry = post_entry(
                debit_account_code=debit,
                credit_account_code=credit,
                amount_cents=abs(int(rec.variance_cents)),
                description=f"Reconciliation #{rec.id} adjustment",
                reference_id=f"REC-{rec.id}",
                source=EntrySource.RECONCILIATION,
                actor=actor,
            )
            rec.adjustment_entry_id = entry.id

        rec.status = "RESOLVED"
        rec.resolved_by_user_id = actor.user_id
        rec.resolved_at = utcnow()
        if notes:
            rec.notes = notes
        db.session.flush()

        audit_service.record(
            AuditEventType.ACCOUNTING_ADJUSTMENT,
            actor=actor,
            before=before,
            after=rec.to_dict(),
            reason=notes,
        )
        db.session.commit()
        return rec

    return run_atomic(_op)
