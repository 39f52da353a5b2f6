# Overview: Read-only product/deal catalog lookups and loyalty point calculation.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..models import Product, ProductDeal
from ..time_utils import in_window, utcnow
from ..validation import NotFoundError, ValidationError


@dataclass(frozen=True)
class PointsQuote:
    base_points: int
    bonus_points: int
    deal_id: int | None

    @property
    def total(self) -> int:
        return self.base_points + self.bonus_points


def deal_applies(deal: ProductDeal, quantity: int, at: datetime) -> bool:
    """
    A deal applies when it is active, `at` falls inside its window
    (inclusive, open-ended when NULL) and the threshold is met.
    """
    if not deal.is_active or not in_window(at, deal.starts_at, deal.ends_at):
        return False
    return quantity >= deal.min_quantity


def calculate_points(points_per_unit: int, quantity: int, deals: list[ProductDeal], at: datetime) -> PointsQuote:
    """
    points = quantity * points_per_unit, plus the largest flat bonus among
    deals that apply at `at`. Bonuses do not stack.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")
    base = quantity * points_per_unit
    best: ProductDeal | None = None
    for deal in deals:
        if not deal_applies(deal, quantity, at):
            continue
        if best is None or deal.bonus_points > best.bonus_points:
            best = deal
    if best is None:
        return PointsQuote(base_points=base, bonus_points=0, deal_id=None)
    return PointsQuote(base_points=base, bonus_points=best.bonus_points, deal_id=best.id)


class ProductCatalog:
    def __init__(self, session):
        self.session = session

    def get_product(self, product_id: int) -> Product:
        product = self.session.get(Product, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def points_per_unit(self, product_id: int) -> int:
        value = (
            self.session.query(Product.loyalty_points_per_unit)
            .filter(Product.id == product_id)
            .scalar()
        )
        if value is None:
            raise NotFoundError(f"Product {product_id} not found")
        return int(value)

    def active_deals(self, product_id: int, at: datetime | None = None) -> list[ProductDeal]:
        at = at or utcnow()
        deals = (
            self.session.query(ProductDeal)
            .filter(ProductDeal.product_id == product_id, ProductDeal.is_active.is_(True))
            .order_by(ProductDeal.min_quantity.asc(), ProductDeal.id.asc())
            .all()
        )
        return [d for d in deals if in_window(at, d.starts_at, d.ends_at)]

    def loyalty_points_for(self, product_id: int, quantity: int, at: datetime | None = None) -> PointsQuote:
        """Deal validity is judged at `at` (approval time), not at submission time."""
        at = at or utcnow()
        return calculate_points(self.points_per_unit(product_id), quantity, self.active_deals(product_id, at), at)

    def add_deal(
        self,
        product_id: int,
        *,
        name: str,
        min_quantity: int,
        bonus_points: int,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
    ) -> ProductDeal:
        self.get_product(product_id)
        if min_quantity < 1:
            raise ValidationError("min_quantity must be >= 1")
        if bonus_points < 0:
            raise ValidationError("bonus_points must be >= 0")
        if starts_at and ends_at and ends_at < starts_at:
            raise ValidationError("ends_at must be after starts_at")
        deal = ProductDeal(
            product_id=product_id,
            name=name,
            min_quantity=min_quantity,
            bonus_points=bonus_points,
            starts_at=starts_at,
            ends_at=ends_at,
        )
        self.session.add(deal)
        self.session.flush()
        return deal
