# Overview: Flask API routes for CRM customers.

from flask import Blueprint, request, jsonify, g

from ..services import customer_service
from ..services.permission_service import has_permission
from ..decorators import require_auth, require_any_permission, require_permission
from .errors import json_error


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("")
@require_auth
@require_any_permission("NAV_CRM", "NAV_CALL_CENTER", "NAV_POS")
def list_customers_route():
    """Contact fields are masked without DATA_VIEW_CUSTOMER_SENSITIVE."""
    try:
        customers = customer_service.list_customers(
            search=request.args.get("q"),
            limit=request.args.get("limit", default=100, type=int),
        )
        sensitive = has_permission(g.actor, "DATA_VIEW_CUSTOMER_SENSITIVE")
        return jsonify({
            "customers": [c.to_dict(include_sensitive=sensitive) for c in customers],
            "count": len(customers),
        }), 200

    except Exception as e:
        return json_error(e, action="list customers")


@customers_bp.post("")
@require_auth
@require_permission("NAV_CRM")
def create_customer_route():
    try:
        customer = customer_service.create_customer(payload=request.get_json(silent=True), actor=g.actor)
        return jsonify({"customer": customer.to_dict()}), 201

    except Exception as e:
        return json_error(e, action="create customer")
