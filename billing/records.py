"""Typed input records accepted by the ledger operations."""

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value):
    try:
        return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"{value!r} is not a valid amount")


@dataclass(frozen=True)
class InvoiceItemInput:
    product_id: uuid.UUID
    quantity: Decimal
    unit_price: Decimal | None = None
    # Set when the item already exists on the invoice being edited.
    item_id: uuid.UUID | None = None


@dataclass(frozen=True)
class InvoiceInput:
    customer_id: uuid.UUID
    items: tuple[InvoiceItemInput, ...] = field(default_factory=tuple)
    discount_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    invoice_date: date | None = None
    notes: str = ""


@dataclass(frozen=True)
class InvoiceUpdateInput:
    items: tuple[InvoiceItemInput, ...] = field(default_factory=tuple)
    customer_id: uuid.UUID | None = None
    discount_amount: Decimal = ZERO
    paid_amount: Decimal | None = None
    invoice_date: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class PaymentInput:
    customer_id: uuid.UUID
    amount: Decimal
    payment_date: date | None = None
    notes: str | None = None
