# Overview: Flask API routes for the inventory ledger; read-only audit history.

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import Product, User
from ..models.auth import APPROVER_ROLES, ROLE_CLIENT
from ..decorators import require_actor, scoped_org_id
from ..services.ledger_service import LedgerStore

"""
Time semantics:
- occurred_at is stored UTC-naive and serialized with a trailing Z.
- History is newest first; limit is clamped to LEDGER_HISTORY_MAX_LIMIT.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/inventory-ledger")


def _store() -> LedgerStore:
    return LedgerStore(db.session, max_history_limit=current_app.config.get("LEDGER_HISTORY_MAX_LIMIT", 500))


def _in_scope(entity) -> bool:
    org_id = scoped_org_id()
    return entity is not None and (org_id is None or entity.org_id == org_id)


@ledger_bp.get("/products/<int:product_id>")
@require_actor(*APPROVER_ROLES)
def product_history_route(product_id: int):
    product = db.session.get(Product, product_id)
    if not _in_scope(product):
        return jsonify({"error": f"Product {product_id} not found"}), 404

    limit = request.args.get("limit", default=100, type=int)
    rows = _store().history_for(product_id=product_id, limit=limit)
    return jsonify({
        "product_id": product_id,
        "stock": product.stock,
        "items": [r.to_dict() for r in rows],
    }), 200


@ledger_bp.get("/clients/<int:client_id>")
@require_actor(*APPROVER_ROLES, ROLE_CLIENT)
def client_history_route(client_id: int):
    if g.current_user.role == ROLE_CLIENT and g.current_user.id != client_id:
        return jsonify({"error": f"Client {client_id} not found"}), 404

    client = db.session.get(User, client_id)
    if not _in_scope(client) or client.role != ROLE_CLIENT:
        return jsonify({"error": f"Client {client_id} not found"}), 404

    limit = request.args.get("limit", default=100, type=int)
    rows = _store().history_for(client_id=client_id, limit=limit)
    return jsonify({
        "client_id": client_id,
        "items": [r.to_dict() for r in rows],
    }), 200
