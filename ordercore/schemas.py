"""Pydantic schemas for orders.

This module exposes the input schema used to validate shipping details at
checkout and the read schemas handed to presentation collaborators.
"""

import re
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from .domain import Order, OrderLine, Receiver

PHONE_RE = re.compile(r"^\+?[0-9][0-9 -]{5,19}$")


class ReceiverIn(BaseModel):
    """Input schema for the shipping destination.

    Attributes:
        name: Receiver's name, 1-64 chars after trimming.
        phone: Contact number; digits with optional leading ``+``, spaces
            and dashes.
        address: Delivery address, 1-255 chars after trimming.
    """

    name: str = Field(min_length=1, max_length=64)
    phone: str = Field(min_length=6, max_length=20)
    address: str = Field(min_length=1, max_length=255)

    @field_validator("name", "phone", "address", mode="before")
    @classmethod
    def strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        """Validate the phone number format.

        Raises:
            ValueError: When the phone does not match ``PHONE_RE``.
        """
        if not PHONE_RE.match(v):
            raise ValueError("Invalid phone format")
        return v

    def to_domain(self) -> Receiver:
        return Receiver(name=self.name, phone=self.phone, address=self.address)


class OrderLineReadDTO(BaseModel):
    product_id: int
    quantity: int
    unit_price: str
    line_total: str

    @classmethod
    def from_line(cls, line: OrderLine) -> "OrderLineReadDTO":
        return cls(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=str(line.unit_price),
            line_total=str(line.line_total),
        )


class OrderReadDTO(BaseModel):
    """Read model of an order for display.

    Money is rendered as decimal strings so no float ever touches an amount.
    """

    id: int
    order_number: str
    user_id: int
    status: str
    total_amount: str
    receiver_name: str
    receiver_phone: str
    receiver_address: str
    created_at: datetime
    updated_at: datetime
    lines: list[OrderLineReadDTO]

    @classmethod
    def from_order(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status.value,
            total_amount=str(order.total_amount),
            receiver_name=order.receiver.name,
            receiver_phone=order.receiver.phone,
            receiver_address=order.receiver.address,
            created_at=order.created_at,
            updated_at=order.updated_at,
            lines=[OrderLineReadDTO.from_line(line) for line in order.lines],
        )
