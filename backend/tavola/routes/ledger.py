# Overview: Flask API routes for the financial ledger; parses input and returns JSON responses.

from datetime import timedelta

from flask import Blueprint, request, jsonify, g

from ..services import ledger_service
from ..validation import ValidationError
from ..decorators import require_auth, require_permission
from tavola.time_utils import parse_iso_datetime
from .errors import json_error


ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _parse_date(value, field: str, *, end_of_day: bool = False):
    if value is None:
        return None
    try:
        parsed = parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date or datetime")
    # A bare date as period end covers that whole day.
    if parsed is not None and end_of_day and len(str(value).strip()) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


def _entry_fields(data: dict) -> dict:
    for key in ("debit_account_code", "credit_account_code", "amount_cents", "description"):
        if data.get(key) in (None, ""):
            raise ValidationError(f"Missing required field: {key}")
    return {
        "debit_account_code": str(data["debit_account_code"]),
        "credit_account_code": str(data["credit_account_code"]),
        "amount_cents": data["amount_cents"],
        "description": str(data["description"]),
        "reference_id": data.get("reference_id"),
        "entry_date": _parse_date(data.get("entry_date"), "entry_date"),
    }


@ledger_bp.get("/accounts")
@require_auth
@require_permission("NAV_FINANCE")
def list_accounts_route():
    """Flat chart (?view=tree for the nested form with roll-ups)."""
    try:
        accounts = ledger_service.list_accounts()
        if request.args.get("view") == "tree":
            tree = ledger_service.build_account_tree(accounts)
            return jsonify({"accounts": [node.to_dict() for node in tree]}), 200
        return jsonify({"accounts": [a.to_dict() for a in accounts], "count": len(accounts)}), 200

    except Exception as e:
        return json_error(e, action="list accounts")


@ledger_bp.get("/entries")
@require_auth
@require_permission("NAV_FINANCE")
def list_entries_route():
    try:
        entries = ledger_service.list_entries(
            account_code=request.args.get("account_code"),
            reference_id=request.args.get("reference_id"),
            source=request.args.get("source"),
            limit=request.args.get("limit", default=100, type=int),
            offset=request.args.get("offset", default=0, type=int),
        )
        return jsonify({"entries": [e.to_dict() for e in entries], "count": len(entries)}), 200

    except Exception as e:
        return json_error(e, action="list journal entries")


@ledger_bp.post("/entries")
@require_auth
@require_permission("NAV_FINANCE")
def post_entry_route():
    """
    Manual journal entry.

    Body: {"debit_account_code", "credit_account_code", "amount_cents",
    "description", "reference_id"?, "entry_date"?, "reason"?}
    """
    try:
        data = request.get_json(silent=True) or {}
        entry = ledger_service.post_manual_entry(actor=g.actor, reason=data.get("reason"), **_entry_fields(data))
        return jsonify({"entry": entry.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="post journal entry")


@ledger_bp.post("/entries/preview")
@require_auth
@require_permission("NAV_FINANCE")
def preview_entry_route():
    """Chart tree as it would look after the entry; nothing is written."""
    try:
        data = request.get_json(silent=True) or {}
        fields = _entry_fields({"description": "preview", **data})
        tree = ledger_service.preview_entry(
            debit_account_code=fields["debit_account_code"],
            credit_account_code=fields["credit_account_code"],
            amount_cents=fields["amount_cents"],
        )
        return jsonify({"accounts": [node.to_dict() for node in tree]}), 200

    except Exception as e:
        return json_error(e, action="preview journal entry")


@ledger_bp.get("/trial-balance")
@require_auth
@require_permission("NAV_FINANCE")
def trial_balance_route():
    try:
        return jsonify(ledger_service.trial_balance()), 200

    except Exception as e:
        return json_error(e, action="build trial balance")


@ledger_bp.post("/period-close")
@require_auth
@require_permission("OP_CLOSE_DAY")
def close_period_route():
    """Body: {"period_start", "period_end", "notes"?}. Dates are ISO-8601."""
    try:
        data = request.get_json(silent=True) or {}
        close = ledger_service.close_period(
            period_start=_parse_date(data.get("period_start"), "period_start"),
            period_end=_parse_date(data.get("period_end"), "period_end", end_of_day=True),
            actor=g.actor,
            notes=data.get("notes"),
        )
        return jsonify({"period_close": close.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="close period")


@ledger_bp.post("/reconciliations")
@require_auth
@require_permission("NAV_FINANCE")
def create_reconciliation_route():
    """Body: {"account_code", "statement_balance_cents", "statement_date"?, "notes"?}."""
    try:
        data = request.get_json(silent=True) or {}
        rec = ledger_service.create_reconciliation(
            account_code=str(data.get("account_code") or ""),
            statement_balance_cents=data.get("statement_balance_cents"),
            statement_date=_parse_date(data.get("statement_date"), "statement_date"),
            notes=data.get("notes"),
            actor=g.actor,
        )
        return jsonify({"reconciliation": rec.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="create reconciliation")


@ledger_bp.post("/reconciliations/<int:reconciliation_id>/resolve")
@require_auth
@require_permission("NAV_FINANCE")
def resolve_reconciliation_route(reconciliation_id: int):
    """Body: {"post_adjustment"?: bool, "offset_account_code"?, "notes"?}."""
    try:
        data = request.get_json(silent=True) or {}
        rec = ledger_service.resolve_reconciliation(
            reconciliation_id=reconciliation_id,
            post_adjustment=bool(data.get("post_adjustment")),
            offset_account_code=data.get("offset_account_code"),
            notes=data.get("notes"),
            actor=g.actor,
        )
        return jsonify({"reconciliation": rec.to_dict()}), 200

    except Exception as e:
        return json_error(e, action="resolve reconciliation")
