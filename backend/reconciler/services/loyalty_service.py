# Overview: Loyalty ledger; client point balances with idempotent-by-reference credits.

"""
Loyalty Ledger

INVARIANTS:
- points_balance == lifetime_points_earned - lifetime_points_redeemed, always.
  Every counter change is one UPDATE that moves balance and the matching
  lifetime counter together.
- points_balance never goes negative (redeem is conditional on balance >= amount).
- A (type, reference_type, reference_id) triple moves an account at most once.
  A repeat call returns the original transaction without touching counters.

These methods flush but do not commit; the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..models import LoyaltyAccount, LoyaltyTransaction
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError


TX_EARN = "EARN"
TX_REDEEM = "REDEEM"

REF_PURCHASE_REQUEST = "purchase_request"
REF_REDEMPTION = "redemption"
REF_ADJUSTMENT = "adjustment"
VALID_REFERENCE_TYPES = {REF_PURCHASE_REQUEST, REF_REDEMPTION, REF_ADJUSTMENT}


class InvalidAmountError(ValueError):
    """
    Non-positive point amount. Point calculation should never produce one,
    so callers treat this as a programming error rather than user input.
    """


class InsufficientPointsError(ConflictError):
    def __init__(self, client_id: int, requested: int, available: int):
        self.client_id = client_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Client {client_id} has {available} points, cannot redeem {requested}"
        )


class LoyaltyAccountNotFoundError(NotFoundError):
    def __init__(self, client_id: int):
        self.client_id = client_id
        super().__init__(f"No loyalty account for client {client_id}")


@dataclass(frozen=True)
class PointsResult:
    transaction: LoyaltyTransaction
    balance_after: int
    replayed: bool


def _require_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"Points amount must be a positive integer, got {amount!r}")
    return amount


class LoyaltyLedger:
    def __init__(self, session):
        self.session = session

    def get_account(self, client_id: int) -> LoyaltyAccount | None:
        return (
            self.session.query(LoyaltyAccount)
            .filter(LoyaltyAccount.client_id == client_id)
            .first()
        )

    def _account_id(self, client_id: int) -> int | None:
        return (
            self.session.query(LoyaltyAccount.id)
            .filter(LoyaltyAccount.client_id == client_id)
            .scalar()
        )

    def ensure_account(self, client_id: int, *, org_id: int | None = None) -> int:
        """
        Find or create the client's account. Safe to call repeatedly and concurrently.
        """
        account_id = self._account_id(client_id)
        if account_id is not None:
            return account_id

        account = LoyaltyAccount(client_id=client_id, org_id=org_id)
        try:
            with self.session.begin_nested():
                self.session.add(account)
        except IntegrityError:
            account_id = self._account_id(client_id)
            if account_id is None:
                raise
            return account_id
        return account.id

    def _find_transaction(self, account_id: int, transaction_type: str, reference_type: str, reference_id: str):
        return (
            self.session.query(LoyaltyTransaction)
            .filter_by(
                account_id=account_id,
                transaction_type=transaction_type,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            .first()
        )

    def _balance(self, account_id: int) -> int:
        return int(
            self.session.query(LoyaltyAccount.points_balance)
            .filter(LoyaltyAccount.id == account_id)
            .scalar()
        )

    def _record(self, *, account_id: int, transaction_type: str, points: int, reason: str,
                reference_type: str, reference_id: str, product_id: int | None) -> LoyaltyTransaction:
        tx = LoyaltyTransaction(
            account_id=account_id,
            transaction_type=transaction_type,
            points=points,
            balance_after=self._balance(account_id),
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            product_id=product_id,
            occurred_at=utcnow(),
        )
        self.session.add(tx)
        self.session.flush()
        return tx

    def credit(
        self,
        client_id: int,
        amount: int,
        reason: str,
        reference_id,
        *,
        reference_type: str = REF_PURCHASE_REQUEST,
        org_id: int | None = None,
        product_id: int | None = None,
    ) -> PointsResult:
        """
        Add points to a client, at most once per reference.

        Raises:
            InvalidAmountError: amount <= 0
        """
        amount = _require_amount(amount)
        if reference_type not in VALID_REFERENCE_TYPES:
            raise ValidationError(f"Invalid reference_type '{reference_type}'")
        reference_id = str(reference_id)

        account_id = self.ensure_account(client_id, org_id=org_id)

        prior = self._find_transaction(account_id, TX_EARN, reference_type, reference_id)
        if prior is not None:
            return PointsResult(transaction=prior, balance_after=prior.balance_after, replayed=True)

        def _apply():
            self.session.execute(
                update(LoyaltyAccount)
                .where(LoyaltyAccount.id == account_id)
                .values(
                    points_balance=LoyaltyAccount.points_balance + amount,
                    lifetime_points_earned=LoyaltyAccount.lifetime_points_earned + amount,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return self._record(
                account_id=account_id,
                transaction_type=TX_EARN,
                points=amount,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
                product_id=product_id,
            )

        try:
            with self.session.begin_nested():
                tx = _apply()
        except IntegrityError:
            # Same reference credited concurrently; the savepoint undid our counter move.
            prior = self._find_transaction(account_id, TX_EARN, reference_type, reference_id)
            if prior is None:
                raise
            return PointsResult(transaction=prior, balance_after=prior.balance_after, replayed=True)

        return PointsResult(transaction=tx, balance_after=tx.balance_after, replayed=False)

    def redeem(
        self,
        client_id: int,
        amount: int,
        reason: str,
        reference_id,
        *,
        reference_type: str = REF_REDEMPTION,
    ) -> PointsResult:
        """
        Spend points, at most once per reference.

        Raises:
            InvalidAmountError: amount <= 0
            LoyaltyAccountNotFoundError: client never earned points
            InsufficientPointsError: balance < amount (nothing is written)
        """
        amount = _require_amount(amount)
        if reference_type not in VALID_REFERENCE_TYPES:
            raise ValidationError(f"Invalid reference_type '{reference_type}'")
        reference_id = str(reference_id)

        account_id = self._account_id(client_id)
        if account_id is None:
            raise LoyaltyAccountNotFoundError(client_id)

        prior = self._find_transaction(account_id, TX_REDEEM, reference_type, reference_id)
        if prior is not None:
            return PointsResult(transaction=prior, balance_after=prior.balance_after, replayed=True)

        with self.session.begin_nested():
            result = self.session.execute(
                update(LoyaltyAccount)
                .where(LoyaltyAccount.id == account_id, LoyaltyAccount.points_balance >= amount)
                .values(
                    points_balance=LoyaltyAccount.points_balance - amount,
                    lifetime_points_redeemed=LoyaltyAccount.lifetime_points_redeemed + amount,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientPointsError(client_id, amount, self._balance(account_id))
            tx = self._record(
                account_id=account_id,
                transaction_type=TX_REDEEM,
                points=-amount,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
                product_id=None,
            )
        return PointsResult(transaction=tx, balance_after=tx.balance_after, replayed=False)

    def balance(self, client_id: int) -> int:
        account_id = self._account_id(client_id)
        if account_id is None:
            return 0
        return self._balance(account_id)

    def transactions(self, client_id: int, limit: int = 50) -> list[LoyaltyTransaction]:
        account_id = self._account_id(client_id)
        if account_id is None:
            return []
        return (
            self.session.query(LoyaltyTransaction)
            .filter(LoyaltyTransaction.account_id == account_id)
            .order_by(LoyaltyTransaction.occurred_at.desc(), LoyaltyTransaction.id.desc())
            .limit(max(1, min(limit, 500)))
            .all()
        )

    def credited_for(self, client_id: int, reference_id, *, reference_type: str = REF_PURCHASE_REQUEST):
        """The EARN transaction for a reference, if any."""
        account_id = self._account_id(client_id)
        if account_id is None:
            return None
        return self._find_transaction(account_id, TX_EARN, reference_type, str(reference_id))
