# backend/reconciler/services/purchase_request_service.py
"""
Purchase Request Submission and Reads

MULTI-TENANT: a client may only request products of its own organization.
Reads are scoped by org_id; super admins pass org_id=None to see every tenant.

Decisions (approve/reject) live in reconciliation_service, never here.
"""
from __future__ import annotations

from ..extensions import db
from ..models import Product, PurchaseRequest, User
from ..models.auth import ROLE_CLIENT
from ..validation import (
    PayloadPolicy,
    ValidationError,
    NotFoundError,
    enforce_rules_purchase_request,
    validate_payload,
)
from .request_state_service import RequestNotFoundError, validate_status


SUBMIT_POLICY = PayloadPolicy(
    writable_fields=frozenset({"product_id", "quantity", "unit_price_cents", "notes"}),
    required=frozenset({"product_id", "quantity"}),
)


class SubmissionError(ValidationError):
    """The client or product cannot take part in a purchase request."""


def _require_client(client_id: int) -> User:
    client = db.session.get(User, client_id)
    if client is None:
        raise NotFoundError(f"User {client_id} not found")
    if client.role != ROLE_CLIENT:
        raise SubmissionError("Only clients can submit purchase requests")
    if not client.is_active:
        raise SubmissionError("Client account is deactivated")
    return client


def submit_purchase_request(client_id: int, payload: dict) -> PurchaseRequest:
    """
    Create a PENDING purchase request for the client.

    unit_price_cents defaults to the product's current price; the price is
    frozen on the request so later price edits do not change it.

    Raises:
        ValidationError: bad payload, quantity <= 0, negative price, inactive product
        NotFoundError: unknown client or product
    """
    data = validate_payload(model=PurchaseRequest, payload=payload, policy=SUBMIT_POLICY)
    client = _require_client(client_id)

    product = db.session.get(Product, data["product_id"])
    if product is None or product.org_id != client.org_id:
        # Other tenants' products are indistinguishable from missing ones.
        raise NotFoundError(f"Product {data['product_id']} not found")
    if not product.is_active:
        raise SubmissionError(f"Product {product.id} is not available")

    unit_price_cents = data.get("unit_price_cents")
    if unit_price_cents is None:
        unit_price_cents = product.price_cents
    enforce_rules_purchase_request(data["quantity"], unit_price_cents)

    purchase_request = PurchaseRequest(
        org_id=client.org_id,
        product_id=product.id,
        client_id=client.id,
        quantity=data["quantity"],
        unit_price_cents=unit_price_cents,
        notes=data.get("notes") or None,
        status="PENDING",
        version_id=1,
    )
    db.session.add(purchase_request)
    db.session.commit()
    return purchase_request


def get_purchase_request(request_id: int, org_id: int | None = None) -> PurchaseRequest:
    purchase_request = db.session.get(PurchaseRequest, request_id)
    if purchase_request is None:
        raise RequestNotFoundError(request_id)
    if org_id is not None and purchase_request.org_id != org_id:
        raise RequestNotFoundError(request_id)
    return purchase_request


def list_purchase_requests(
    org_id: int | None = None,
    *,
    status: str | None = None,
    client_id: int | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """
    Newest first, paginated.

    Returns:
        Dict with 'items', 'count', 'page', 'per_page'.
    """
    q = db.session.query(PurchaseRequest)
    if org_id is not None:
        q = q.filter(PurchaseRequest.org_id == org_id)
    if status:
        status = status.upper()
        validate_status(status)
        q = q.filter(PurchaseRequest.status == status)
    if client_id is not None:
        q = q.filter(PurchaseRequest.client_id == client_id)

    page = max(1, page)
    per_page = max(1, min(per_page, 100))
    count = q.count()
    rows = (
        q.order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [r.to_dict() for r in rows],
        "count": count,
        "page": page,
        "per_page": per_page,
    }
