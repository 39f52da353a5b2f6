# Overview: Inventory repository; owns admin product stock and client inventory quantities.

"""
Stock Invariants (authoritative)

- products.stock never goes negative.
- decrement_source is ONE conditional UPDATE:
      UPDATE products SET stock = stock - :qty WHERE id = :id AND stock >= :qty
  Two concurrent approvals can never both pass a stale sufficiency check,
  because the check and the write are the same statement.
- upsert_destination increments an existing (client, product) row with a
  single UPDATE; when no row exists it inserts inside a SAVEPOINT and, if a
  concurrent insert won the unique constraint, falls back to the UPDATE.
- Both operations run inside the caller's transaction and do not commit.
  After the UPDATE the row is write-locked until commit, so reading the new
  value back in the same transaction is race-free.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..models import Product, ClientInventory
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class InsufficientStockError(ConflictError):
    """Not enough admin stock. Retryable once the product is restocked."""

    retryable = True

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for product {product_id}: requested {requested}, available {available}"
        )


@dataclass(frozen=True)
class StockChange:
    previous: int
    new: int


@dataclass(frozen=True)
class AllocationChange:
    previous: int
    new: int
    is_new: bool


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")


class InventoryRepository:
    def __init__(self, session):
        self.session = session

    def current_stock(self, product_id: int) -> int:
        stock = (
            self.session.query(Product.stock)
            .filter(Product.id == product_id)
            .scalar()
        )
        if stock is None:
            raise ProductNotFoundError(product_id)
        return int(stock)

    def client_quantity(self, client_id: int, product_id: int) -> int | None:
        qty = (
            self.session.query(ClientInventory.quantity)
            .filter(ClientInventory.client_id == client_id, ClientInventory.product_id == product_id)
            .scalar()
        )
        return None if qty is None else int(qty)

    def decrement_source(self, product_id: int, quantity: int) -> StockChange:
        """
        Atomically take quantity units out of an admin product.

        Raises:
            ValidationError: quantity not a positive integer
            ProductNotFoundError: no such product
            InsufficientStockError: stock < quantity (nothing is written)
        """
        _require_positive(quantity)

        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            # Distinguish a missing product from a short one; nothing was written either way.
            available = self.current_stock(product_id)
            raise InsufficientStockError(product_id, quantity, available)

        new_stock = self.current_stock(product_id)
        return StockChange(previous=new_stock + quantity, new=new_stock)

    def restock(self, product_id: int, quantity: int) -> StockChange:
        """Add units to an admin product (receiving; not part of the approval path)."""
        _require_positive(quantity)
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise ProductNotFoundError(product_id)
        new_stock = self.current_stock(product_id)
        return StockChange(previous=new_stock - quantity, new=new_stock)

    def _increment_existing(self, client_id: int, product_id: int, quantity: int) -> int | None:
        stmt = (
            update(ClientInventory)
            .where(ClientInventory.client_id == client_id, ClientInventory.product_id == product_id)
            .values(quantity=ClientInventory.quantity + quantity, last_updated=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if not result.rowcount:
            return None
        return self.client_quantity(client_id, product_id)

    def upsert_destination(self, client_id: int, product_id: int, quantity: int, *, org_id: int) -> AllocationChange:
        """
        Create the client's record with `quantity`, or increment the existing one.
        """
        _require_positive(quantity)

        new_qty = self._increment_existing(client_id, product_id, quantity)
        if new_qty is not None:
            return AllocationChange(previous=new_qty - quantity, new=new_qty, is_new=False)

        record = ClientInventory(
            org_id=org_id,
            client_id=client_id,
            product_id=product_id,
            quantity=quantity,
            last_updated=utcnow(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(record)
        except IntegrityError:
            # A concurrent first allocation created the row; increment it instead.
            new_qty = self._increment_existing(client_id, product_id, quantity)
            if new_qty is None:
                raise
            return AllocationChange(previous=new_qty - quantity, new=new_qty, is_new=False)

        return AllocationChange(previous=0, new=quantity, is_new=True)

    def client_inventory(self, client_id: int) -> list[ClientInventory]:
        return (
            self.session.query(ClientInventory)
            .filter(ClientInventory.client_id == client_id)
            .order_by(ClientInventory.product_id.asc())
            .all()
        )
