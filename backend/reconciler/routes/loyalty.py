# Overview: Flask API routes for client loyalty balances and transaction history.

from flask import Blueprint, request, jsonify, g

from ..extensions import db
from ..models import User
from ..models.auth import APPROVER_ROLES, ROLE_CLIENT
from ..decorators import require_actor, scoped_org_id
from ..services.loyalty_service import LoyaltyLedger
from ..services.stock_service import InventoryRepository


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")


@loyalty_bp.get("/<int:client_id>")
@require_actor(*APPROVER_ROLES, ROLE_CLIENT)
def client_loyalty_route(client_id: int):
    """
    Balance, lifetime counters, recent transactions and current client inventory.
    """
    if g.current_user.role == ROLE_CLIENT and g.current_user.id != client_id:
        return jsonify({"error": f"Client {client_id} not found"}), 404

    client = db.session.get(User, client_id)
    org_id = scoped_org_id()
    if client is None or client.role != ROLE_CLIENT or (org_id is not None and client.org_id != org_id):
        return jsonify({"error": f"Client {client_id} not found"}), 404

    ledger = LoyaltyLedger(db.session)
    account = ledger.get_account(client_id)
    limit = max(1, min(request.args.get("limit", default=50, type=int), 500))

    return jsonify({
        "client_id": client_id,
        "account": account.to_dict() if account else None,
        "points_balance": account.points_balance if account else 0,
        "transactions": [t.to_dict() for t in ledger.transactions(client_id, limit=limit)],
        "inventory": [r.to_dict() for r in InventoryRepository(db.session).client_inventory(client_id)],
    }), 200
