# Overview: Flask API routes for purchase requests; submission, reads and admin decisions.

# backend/reconciler/routes/purchase_requests.py
"""
Purchase Request API Routes

DESIGN:
- Clients submit requests (status: PENDING)
- Admins approve or reject; the decision is applied exactly once
- A repeated or concurrent decision returns 200 with outcome ALREADY_PROCESSED

RESPONSES:
- ValidationError -> 400
- NotFoundError -> 404
- InsufficientStockError -> 409 with "retryable": true (request is PENDING again)
- ConflictError -> 409
- ReconciliationIncompleteError -> 500 with request_id (needs manual reconciliation)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, scoped_org_id
from ..models.auth import APPROVER_ROLES, ROLE_CLIENT, ROLE_SUPER_ADMIN, ROLE_ADMIN
from ..services import purchase_request_service
from ..services.reconciliation_service import (
    ReconciliationIncompleteError,
    approve_purchase_request,
    reject_purchase_request,
)
from ..services.stock_service import InsufficientStockError
from ..validation import ConflictError, NotFoundError, ValidationError


purchase_requests_bp = Blueprint("purchase_requests", __name__, url_prefix="/api/purchase-requests")


def _visible_request(request_id: int):
    """Load a request the current actor may see; clients only see their own."""
    purchase_request = purchase_request_service.get_purchase_request(request_id, scoped_org_id())
    if g.current_user.role == ROLE_CLIENT and purchase_request.client_id != g.current_user.id:
        raise NotFoundError(f"Purchase request {request_id} not found")
    return purchase_request


# =============================================================================
# SUBMISSION AND READS
# =============================================================================

@purchase_requests_bp.post("")
@require_actor(ROLE_CLIENT)
def submit_purchase_request_route():
    """
    Request body:
    {
        "product_id": 1,
        "quantity": 4,
        "unit_price_cents": 1299,  (optional, defaults to product price)
        "notes": "For the spring display"  (optional)
    }

    Returns:
        201: Request created with PENDING status
        400: Invalid input
        404: Product not found
    """
    try:
        purchase_request = purchase_request_service.submit_purchase_request(
            g.current_user.id, request.get_json(silent=True)
        )
        return jsonify({"purchase_request": purchase_request.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to submit purchase request")
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.get("")
@require_actor(ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_CLIENT)
def list_purchase_requests_route():
    client_id = request.args.get("client_id", type=int)
    if g.current_user.role == ROLE_CLIENT:
        client_id = g.current_user.id

    try:
        result = purchase_request_service.list_purchase_requests(
            scoped_org_id(),
            status=request.args.get("status"),
            client_id=client_id,
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("per_page", default=20, type=int),
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@purchase_requests_bp.get("/<int:request_id>")
@require_actor(ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_CLIENT)
def get_purchase_request_route(request_id: int):
    try:
        purchase_request = _visible_request(request_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"purchase_request": purchase_request.to_dict()}), 200


# =============================================================================
# DECISIONS
# =============================================================================

@purchase_requests_bp.post("/<int:request_id>/approve")
@require_actor(*APPROVER_ROLES)
def approve_purchase_request_route(request_id: int):
    """
    Approve a PENDING request: move stock to the client, write the ledger,
    credit loyalty points and notify the client.

    Returns:
        200: {"outcome": "APPROVED", "snapshot": {...}} or
             {"outcome": "ALREADY_PROCESSED", "status": "<current status>"}
        404: Request not found
        409: Insufficient stock (retryable after restock)
        500: Approval claimed but not completed
    """
    try:
        _visible_request(request_id)
        result = approve_purchase_request(request_id, g.current_user.id)
        return jsonify(result.to_dict()), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InsufficientStockError as e:
        return jsonify({
            "error": str(e),
            "retryable": True,
            "requested": e.requested,
            "available": e.available,
        }), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ReconciliationIncompleteError as e:
        return jsonify({
            "error": "Approval could not be completed; manual reconciliation required",
            "request_id": e.request_id,
            "step": e.step,
        }), 500
    except Exception:
        current_app.logger.exception("Failed to approve purchase request %s", request_id)
        return jsonify({"error": "Internal server error"}), 500


@purchase_requests_bp.post("/<int:request_id>/reject")
@require_actor(*APPROVER_ROLES)
def reject_purchase_request_route(request_id: int):
    """
    Request body:
    {
        "reason": "out of season"
    }

    Returns:
        200: {"outcome": "REJECTED"} or {"outcome": "ALREADY_PROCESSED"}
        400: Missing reason
        404: Request not found
    """
    data = request.get_json(silent=True) or {}
    try:
        _visible_request(request_id)
        result = reject_purchase_request(request_id, g.current_user.id, data.get("reason"))
        return jsonify(result.to_dict()), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to reject purchase request %s", request_id)
        return jsonify({"error": "Internal server error"}), 500
