from __future__ import annotations

from ..extensions import db
from tavola.time_utils import to_utc_z


class AccountType:
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"

    ALL = (ASSET, LIABILITY, EQUITY, REVENUE, EXPENSE)


class FinancialAccount(db.Model):
    """
    Chart-of-accounts node.

    balance_cents is the account's OWN balance (debits positive, credits
    negative). Parent nodes do not store rollups; subtree totals are computed
    on read.
    """
    __tablename__ = "financial_accounts"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_financial_accounts_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(16), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey("financial_accounts.id"), nullable=True, index=True)
    balance_cents = db.Column(db.BigInteger, nullable=False, default=0)

    parent = db.relationship("FinancialAccount", remote_side=[id], backref=db.backref("children", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "parent_id": self.parent_id,
            "balance_cents": self.balance_cents,
        }


class JournalEntry(db.Model):
    """Immutable double-entry record: one debit account, one credit account, one amount."""
    __tablename__ = "journal_entries"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_journal_entries_positive"),
        db.CheckConstraint("debit_account_id <> credit_account_id", name="ck_journal_entries_distinct"),
        db.Index("ix_journal_entries_entry_date", "entry_date"),
        db.Index("ix_journal_entries_reference", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entry_date = db.Column(db.DateTime(timezone=True), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    debit_account_id = db.Column(db.Integer, db.ForeignKey("financial_accounts.id"), nullable=False)
    credit_account_id = db.Column(db.Integer, db.ForeignKey("financial_accounts.id"), nullable=False)
    amount_cents = db.Column(db.BigInteger, nullable=False)
    reference_id = db.Column(db.String(64), nullable=True)

    # ORDER_REVENUE, ORDER_COGS, PURCHASE_RECEIPT, WASTAGE, MANUAL, RECONCILIATION
    source = db.Column(db.String(32), nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    debit_account = db.relationship("FinancialAccount", foreign_keys=[debit_account_id])
    credit_account = db.relationship("FinancialAccount", foreign_keys=[credit_account_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_date": to_utc_z(self.entry_date),
            "description": self.description,
            "debit_account_id": self.debit_account_id,
            "debit_account_code": self.debit_account.code if self.debit_account else None,
            "credit_account_id": self.credit_account_id,
            "credit_account_code": self.credit_account.code if self.credit_account else None,
            "amount_cents": self.amount_cents,
            "reference_id": self.reference_id,
            "source": self.source,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class PeriodClose(db.Model):
    """Closed accounting period; no entry may be dated inside [period_start, period_end]."""
    __tablename__ = "period_closes"
    __table_args__ = (
        db.CheckConstraint("period_end >= period_start", name="ck_period_closes_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    period_end = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    total_debits_cents = db.Column(db.BigInteger, nullable=False, default=0)
    total_credits_cents = db.Column(db.BigInteger, nullable=False, default=0)
    closed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "period_start": to_utc_z(self.period_start),
            "period_end": to_utc_z(self.period_end),
            "total_debits_cents": self.total_debits_cents,
            "total_credits_cents": self.total_credits_cents,
            "closed_by_user_id": self.closed_by_user_id,
            "closed_at": to_utc_z(self.closed_at),
            "notes": self.notes,
        }


class Reconciliation(db.Model):
    """
    Statement-vs-book comparison for one account.
    variance_cents = statement_balance_cents - book_balance_cents.
    """
    __tablename__ = "reconciliations"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("financial_accounts.id"), nullable=False, index=True)
    statement_date = db.Column(db.DateTime(timezone=True), nullable=False)
    statement_balance_cents = db.Column(db.BigInteger, nullable=False)
    book_balance_cents = db.Column(db.BigInteger, nullable=False)
    variance_cents = db.Column(db.BigInteger, nullable=False)

    # OPEN or RESOLVED
    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)
    adjustment_entry_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    account = db.relationship("FinancialAccount")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "account_code": self.account.code if self.account else None,
            "statement_date": to_utc_z(self.statement_date),
            "statement_balance_cents": self.statement_balance_cents,
            "book_balance_cents": self.book_balance_cents,
            "variance_cents": self.variance_cents,
            "status": self.status,
            "adjustment_entry_id": self.adjustment_entry_id,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolved_at": to_utc_z(self.resolved_at),
        }
