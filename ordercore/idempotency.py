"""Idempotency keys for checkout requests.

A client that retries a checkout (double click, network timeout) with the
same idempotency key gets the order created by the first attempt instead of
an ``EMPTY_CART`` failure or, worse, a second order. The key is claimed
inside the checkout transaction, so a checkout that fails releases its key
along with everything else.
"""

import hashlib
import json

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from .domain import CheckoutKeysPort
from .errors import IdempotencyConflict
from .models import CheckoutKeyRow


def request_hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class SqlCheckoutKeys(CheckoutKeysPort):
    def claim(self, uow, key: str, request_hash: str) -> int | None:
        """Claim an idempotency key inside the current transaction.

        Behavior:
            - New key: insert it and return None; the caller proceeds.
            - Existing key with the same hash: lock it and return the order
              id recorded for it.
            - Existing key with a different hash: raise IdempotencyConflict.

        Under concurrency the second claimant blocks on the unique key until
        the first transaction finishes, then sees its committed row.
        """
        s = uow.session
        try:
            # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
            with s.begin_nested():
                s.add(CheckoutKeyRow(key=key, request_hash=request_hash))
                s.flush()
            return None
        except IntegrityError:
            rec = s.execute(
                select(CheckoutKeyRow)
                .where(CheckoutKeyRow.key == key)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            if rec.request_hash != request_hash:
                raise IdempotencyConflict(key)
            return rec.order_id

    def bind(self, uow, key: str, order_id: int) -> None:
        """Record the id of the order created under ``key``."""
        uow.session.execute(
            update(CheckoutKeyRow)
            .where(CheckoutKeyRow.key == key)
            .values(order_id=order_id)
            .execution_options(synchronize_session=False)
        )

    def release(self, uow, order_id: int) -> None:
        """Delete the keys bound to ``order_id``.

        Runs before the order row is deleted, so it does not depend on the
        database enforcing ``ondelete="CASCADE"``.
        """
        uow.session.execute(
            delete(CheckoutKeyRow)
            .where(CheckoutKeyRow.order_id == order_id)
            .execution_options(synchronize_session=False)
        )
