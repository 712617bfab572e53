"""SQL cart snapshot reader.

Reads the cart store's line items for a user and clears them once an order
has been committed. How items got into the cart is the cart store's
business; this module only consumes them.
"""

from decimal import Decimal

from sqlalchemy import delete, select

from .domain import CartLine, CartReaderPort
from .models import CartLineRow


class SqlCartReader(CartReaderPort):
    def read_lines(self, uow, user_id: int) -> tuple[CartLine, ...]:
        """Return the user's cart lines in the order they were added."""
        rows = uow.session.execute(
            select(CartLineRow).where(CartLineRow.user_id == user_id).order_by(CartLineRow.id)
        ).scalars()
        return tuple(
            CartLine(product_id=r.product_id, quantity=r.quantity, unit_price=Decimal(r.unit_price))
            for r in rows
        )

    def clear(self, uow, user_id: int) -> None:
        """Delete every cart line of the user. Only called after the order commits."""
        uow.session.execute(
            delete(CartLineRow)
            .where(CartLineRow.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
