# Overview: Flask CLI command groups for bootstrap, manual reconciliation, and audit reads.

# backend/reconciler/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use 'flask db upgrade' for migrated deployments).
# - python -m flask system seed-demo
#   Idempotent demo tenant: org, super admin, admin, two clients, one product with a deal.
#
# Purchase request decisions and manual reconciliation:
# - python -m flask requests approve 12 --approver 2
# - python -m flask requests reject 12 --approver 2 --reason "out of season"
# - python -m flask requests incomplete [--org-id 1]
#   List approvals that were claimed but never completed.
# - python -m flask requests release 12 --operator 1
#   Put an incomplete approval back to PENDING (refused once ledger entries exist).
#
# Audit:
# - python -m flask ledger history --product-id 3 [--limit 20]
# - python -m flask ledger history --client-id 7
#
# Catalog:
# - python -m flask deals add --product-id 3 --min-quantity 10 --bonus-points 50 [--starts-at ... --ends-at ...]
# - python -m flask products restock --product-id 3 --quantity 25
#   Receive units into organization stock (then retry a request refused for stock).

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Organization, User, Product, PurchaseRequest
from .models.auth import ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_CLIENT
from .services.catalog_service import ProductCatalog
from .services.ledger_service import LedgerStore
from .services.reconciliation_service import (
    ReconciliationIncompleteError,
    default_orchestrator,
)
from .services.stock_service import InsufficientStockError, InventoryRepository
from .time_utils import parse_iso_datetime, to_utc_z
from .validation import ConflictError, NotFoundError, ValidationError


def _require_approver(user_id: int, request_id: int) -> User | None:
    """The user must be an active admin of the request's organization (super admins span all)."""
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        click.echo(f"FAIL User {user_id} not found or deactivated")
        return None
    if user.role not in (ROLE_SUPER_ADMIN, ROLE_ADMIN):
        click.echo(f"FAIL User '{user.username}' ({user.role}) cannot decide purchase requests")
        return None
    purchase_request = db.session.get(PurchaseRequest, request_id)
    # Another tenant's request reads as missing, same as the HTTP routes
    if purchase_request is None or (user.role != ROLE_SUPER_ADMIN and purchase_request.org_id != user.org_id):
        click.echo(f"FAIL Purchase request {request_id} not found")
        return None
    return user


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('seed-demo')
@click.option('--org', 'org_name', default='Demo Organization', help='Organization name')
@click.option('--org-code', default='DEMO', help='Organization code')
@with_appcontext
def seed_demo(org_name, org_code):
    """
    Create a demo tenant. Safe to run repeatedly.

    Creates:
    - Organization (DEMO)
    - Users: root (super_admin), admin (admin), client1 and client2 (client)
    - Product DEMO-001: stock 10, 5 points per unit, 25 bonus points from 5 units
    """
    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    seed_users = [
        ("root", ROLE_SUPER_ADMIN, None),
        ("admin", ROLE_ADMIN, org.id),
        ("client1", ROLE_CLIENT, org.id),
        ("client2", ROLE_CLIENT, org.id),
    ]
    for username, role, user_org_id in seed_users:
        user = db.session.query(User).filter_by(username=username, org_id=user_org_id).first()
        if user:
            click.echo(f"  User '{username}' already exists (ID: {user.id})")
            continue
        user = User(org_id=user_org_id, username=username, email=f"{username}@example.com", role=role)
        db.session.add(user)
        db.session.commit()
        click.echo(f"PASS Created user '{username}' ({role}, ID: {user.id})")

    product = db.session.query(Product).filter_by(org_id=org.id, sku="DEMO-001").first()
    if not product:
        product = Product(
            org_id=org.id,
            sku="DEMO-001",
            name="Demo Product",
            price_cents=1299,
            stock=10,
            loyalty_points_per_unit=5,
        )
        db.session.add(product)
        db.session.flush()
        ProductCatalog(db.session).add_deal(product.id, name="Five or more", min_quantity=5, bonus_points=25)
        db.session.commit()
        click.echo(f"PASS Created product DEMO-001 (ID: {product.id}, stock: {product.stock})")
    else:
        click.echo(f"  Product DEMO-001 already exists (ID: {product.id})")

    click.echo("DONE Demo data ready")


@click.group('requests')
def requests_group():
    """Purchase request decisions and manual reconciliation."""


@requests_group.command('approve')
@click.argument('request_id', type=int)
@click.option('--approver', 'approver_id', type=int, required=True, help='Approving user ID')
@with_appcontext
def approve_request_cli(request_id, approver_id):
    """Approve a PENDING purchase request."""
    if _require_approver(approver_id, request_id) is None:
        return
    try:
        result = default_orchestrator().approve(request_id, approver_id)
    except NotFoundError as e:
        click.echo(f"FAIL {e}")
        return
    except InsufficientStockError as e:
        click.echo(f"FAIL {e}. Request is PENDING again; retry after 'flask products restock'.")
        return
    except ReconciliationIncompleteError as e:
        click.echo(f"FAIL {e}")
        click.echo(f"     Inspect with 'flask requests incomplete', then 'flask requests release {request_id}'.")
        return

    if result.already_processed:
        click.echo(f"SKIP Purchase request {request_id} already {result.status}")
        return

    snap = result.snapshot
    click.echo(f"PASS Approved purchase request {request_id}")
    click.echo(f"     Admin stock:  {snap.admin_stock_before} -> {snap.admin_stock_after}")
    click.echo(
        f"     Client stock: {snap.client_stock_before} -> {snap.client_stock_after}"
        + (" (new record)" if snap.client_record_created else "")
    )
    click.echo(f"     Points:       +{snap.points_credited}")


@requests_group.command('reject')
@click.argument('request_id', type=int)
@click.option('--approver', 'approver_id', type=int, required=True, help='Rejecting user ID')
@click.option('--reason', required=True, help='Rejection reason shown to the client')
@with_appcontext
def reject_request_cli(request_id, approver_id, reason):
    """Reject a PENDING purchase request."""
    if _require_approver(approver_id, request_id) is None:
        return
    try:
        result = default_orchestrator().reject(request_id, approver_id, reason)
    except (NotFoundError, ValidationError) as e:
        click.echo(f"FAIL {e}")
        return

    if result.already_processed:
        click.echo(f"SKIP Purchase request {request_id} already {result.status}")
        return
    click.echo(f"PASS Rejected purchase request {request_id}: {result.rejection_reason}")


@requests_group.command('incomplete')
@click.option('--org-id', type=int, help='Filter by organization ID')
@with_appcontext
def list_incomplete_cli(org_id):
    """List approvals that were claimed but never completed."""
    rows = default_orchestrator().list_incomplete(org_id)
    if not rows:
        click.echo("No incomplete approvals.")
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'ID':<6} {'Org':<5} {'Product':<8} {'Client':<7} {'Qty':<6} {'Decided':<22} {'Error'}")
    click.echo("=" * 100)
    for r in rows:
        click.echo(
            f"{r.id:<6} {r.org_id:<5} {r.product_id:<8} {r.client_id:<7} {r.quantity:<6} "
            f"{to_utc_z(r.decided_at) or '-':<22} {r.reconciliation_error or '-'}"
        )
    click.echo("=" * 100 + "\n")


@requests_group.command('release')
@click.argument('request_id', type=int)
@click.option('--operator', 'operator_id', type=int, required=True, help='Operator user ID')
@with_appcontext
def release_claim_cli(request_id, operator_id):
    """Put an incomplete approval back to PENDING."""
    if _require_approver(operator_id, request_id) is None:
        return
    try:
        released = default_orchestrator().release_claim(request_id, operator_id)
    except (NotFoundError, ConflictError) as e:
        click.echo(f"FAIL {e}")
        return
    if released:
        click.echo(f"PASS Purchase request {request_id} is PENDING again")
    else:
        click.echo(f"SKIP Purchase request {request_id} is not an incomplete approval")


@click.group('ledger')
def ledger_group():
    """Inventory ledger audit reads."""


@ledger_group.command('history')
@click.option('--product-id', type=int, help='Product ID')
@click.option('--client-id', type=int, help='Client user ID')
@click.option('--limit', type=int, default=20, help='Max entries to show')
@with_appcontext
def ledger_history_cli(product_id, client_id, limit):
    """
    Show ledger entries for one product or one client, newest first.

    Example:
        flask ledger history --product-id 3
        flask ledger history --client-id 7 --limit 50
    """
    store = LedgerStore(db.session, max_history_limit=current_app.config.get("LEDGER_HISTORY_MAX_LIMIT", 500))
    try:
        rows = store.history_for(product_id=product_id, client_id=client_id, limit=limit)
    except ValidationError as e:
        click.echo(f"FAIL {e}")
        return

    if not rows:
        click.echo("No ledger entries found.")
        return

    click.echo("\n" + "=" * 110)
    click.echo(f"{'ID':<6} {'When':<22} {'Kind':<11} {'Request':<8} {'Product':<8} {'Client':<7} {'Qty':<6} {'Before -> After'}")
    click.echo("=" * 110)
    for e in rows:
        click.echo(
            f"{e.id:<6} {to_utc_z(e.occurred_at):<22} {e.entry_kind:<11} {e.purchase_request_id:<8} "
            f"{e.product_id:<8} {e.client_id:<7} {e.quantity:<6} {e.previous_quantity} -> {e.new_quantity}"
        )
    click.echo("=" * 110 + "\n")


@click.group('deals')
def deals_group():
    """Product bonus deals."""


@deals_group.command('add')
@click.option('--product-id', type=int, required=True)
@click.option('--name', default=None, help='Deal name (defaults to "Buy N+")')
@click.option('--min-quantity', type=int, required=True)
@click.option('--bonus-points', type=int, required=True)
@click.option('--starts-at', default=None, help='ISO-8601 start (inclusive)')
@click.option('--ends-at', default=None, help='ISO-8601 end (inclusive)')
@with_appcontext
def add_deal_cli(product_id, name, min_quantity, bonus_points, starts_at, ends_at):
    """Add a quantity-threshold bonus to a product."""
    try:
        starts = parse_iso_datetime(starts_at)
        ends = parse_iso_datetime(ends_at)
    except ValueError:
        click.echo("FAIL --starts-at and --ends-at must be ISO-8601 datetimes")
        return

    try:
        deal = ProductCatalog(db.session).add_deal(
            product_id,
            name=name or f"Buy {min_quantity}+",
            min_quantity=min_quantity,
            bonus_points=bonus_points,
            starts_at=starts,
            ends_at=ends,
        )
        db.session.commit()
    except (NotFoundError, ValidationError) as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Created deal {deal.id} on product {product_id}: +{bonus_points} points from {min_quantity} units")


@click.group('products')
def products_group():
    """Organization product stock."""


@products_group.command('restock')
@click.option('--product-id', type=int, required=True)
@click.option('--quantity', type=int, required=True, help='Units received')
@with_appcontext
def restock_product_cli(product_id, quantity):
    """Add received units to a product's organization stock."""
    try:
        change = InventoryRepository(db.session).restock(product_id, quantity)
        db.session.commit()
    except (NotFoundError, ValidationError) as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Restocked product {product_id}: {change.previous} -> {change.new}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(requests_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(deals_group)
    app.cli.add_command(products_group)
