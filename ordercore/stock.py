"""SQL stock ledger.

The ledger is the only writer of the ``stock`` table. Reservation is a
single conditional UPDATE whose predicate carries the sufficiency check, so
two transactions racing for the last unit serialize on the row and the
loser sees zero affected rows. Restock is an atomic increment, never a
read-modify-write.
"""

from sqlalchemy import func, select, update

from .domain import Reservation, StockLedgerPort
from .errors import InvalidQuantity, ProductNotFound
from .models import StockRow


def _require_positive(product_id: int, quantity: int) -> None:
    if quantity <= 0:
        raise InvalidQuantity(product_id, quantity)


class SqlStockLedger(StockLedgerPort):
    """Stock ledger over the ``stock`` table.

    Every method runs inside the caller's unit of work; nothing here commits.
    """

    def check_and_reserve(self, uow, product_id: int, quantity: int) -> Reservation:
        """Atomically reserve ``quantity`` units of a product.

        Args:
            uow: Open ``SqlUnitOfWork``.
            product_id: Product to reserve.
            quantity: Positive number of units.

        Returns:
            Reservation: RESERVED when the row was decremented,
            INSUFFICIENT_STOCK when the row exists but holds less than
            ``quantity``, PRODUCT_NOT_FOUND when there is no row.

        Raises:
            InvalidQuantity: If ``quantity`` is not positive.
        """
        _require_positive(product_id, quantity)
        s = uow.session
        res = s.execute(
            update(StockRow)
            .where(StockRow.product_id == product_id, StockRow.quantity >= quantity)
            .values(quantity=StockRow.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return Reservation.RESERVED
        if self.peek(uow, product_id) is None:
            return Reservation.PRODUCT_NOT_FOUND
        return Reservation.INSUFFICIENT_STOCK

    def restock(self, uow, product_id: int, quantity: int) -> None:
        """Atomically add ``quantity`` units back to a product.

        Args:
            uow: Open ``SqlUnitOfWork``.
            product_id: Product to restock.
            quantity: Positive number of units.

        Raises:
            InvalidQuantity: If ``quantity`` is not positive.
            ProductNotFound: If there is no stock row for the product.
        """
        _require_positive(product_id, quantity)
        res = uow.session.execute(
            update(StockRow)
            .where(StockRow.product_id == product_id)
            .values(quantity=StockRow.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ProductNotFound(product_id)

    def peek(self, uow, product_id: int) -> int | None:
        """Current stock level, or None when the product has no row.

        For display only; a later reservation may still fail.
        """
        return uow.session.execute(
            select(StockRow.quantity).where(StockRow.product_id == product_id)
        ).scalar_one_or_none()

    def provision(self, uow, product_id: int, quantity: int) -> int:
        """Add ``quantity`` units, creating the stock row if needed.

        Returns:
            int: The new stock level.
        """
        _require_positive(product_id, quantity)
        s = uow.session
        res = s.execute(
            update(StockRow)
            .where(StockRow.product_id == product_id)
            .values(quantity=StockRow.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            s.add(StockRow(product_id=product_id, quantity=quantity))
            s.flush()
        return self.peek(uow, product_id)

    def count_low_stock(self, uow, threshold: int) -> int:
        """Count products whose quantity is at or below ``threshold``."""
        return uow.session.execute(
            select(func.count()).select_from(StockRow).where(StockRow.quantity <= threshold)
        ).scalar_one()
