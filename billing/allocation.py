"""FIFO allocation of a payment amount across a customer's outstanding invoices."""

from dataclasses import dataclass
from decimal import Decimal

from billing.exceptions import BillingNotFound, BillingValidationError
from billing.models import Customer, Invoice
from billing.records import ZERO, to_money


@dataclass(frozen=True)
class AllocationLine:
    invoice: Invoice
    balance_due: Decimal
    allocated_amount: Decimal

    @property
    def invoice_id(self):
        return self.invoice.pk

    @property
    def remaining_balance(self):
        return self.balance_due - self.allocated_amount


@dataclass(frozen=True)
class AllocationPlan:
    amount: Decimal
    allocations: tuple[AllocationLine, ...]
    unallocated_amount: Decimal

    @property
    def allocated_amount(self):
        return sum((line.allocated_amount for line in self.allocations), ZERO)


def plan_allocations(invoices, amount):
    """Walk ``invoices`` in the given order and spread ``amount`` across them."""
    amount = to_money(amount)
    remaining = amount
    lines = []
    for invoice in invoices:
        if remaining <= 0:
            break
        if invoice.status == Invoice.Status.PAID or invoice.balance_due <= 0:
            continue
        portion = min(remaining, invoice.balance_due)
        lines.append(AllocationLine(invoice=invoice, balance_due=invoice.balance_due, allocated_amount=portion))
        remaining -= portion
    return AllocationPlan(amount=amount, allocations=tuple(lines), unallocated_amount=remaining)


def outstanding_invoices(customer_id, lock=False):
    qs = (
        Invoice.objects.filter(customer_id=customer_id, balance_due__gt=0)
        .exclude(status=Invoice.Status.PAID)
        .order_by("invoice_date", "sequence_no")
    )
    if lock:
        qs = qs.select_for_update()
    return list(qs)


def allocate(customer_id, amount, prefer_invoice_id=None, lock=False):
    """
    Plan how ``amount`` would settle the customer's open invoices.

    Oldest invoice date first, ties by issue order. ``prefer_invoice_id``
    moves one invoice to the head of the queue. Nothing is written; with
    ``lock=True`` the invoice rows are locked for the caller's transaction.
    """
    try:
        amount = to_money(amount)
    except ValueError:
        raise BillingValidationError("Amount must be a number.", code="invalid_amount", field="amount")
    if amount <= 0:
        raise BillingValidationError("Amount must be greater than zero.", code="invalid_amount", field="amount")
    if not Customer.objects.filter(pk=customer_id).exists():
        raise BillingNotFound("Customer was not found.", code="customer_not_found", field="customer")

    invoices = outstanding_invoices(customer_id, lock=lock)
    if prefer_invoice_id is not None:
        invoices.sort(key=lambda invoice: invoice.pk != prefer_invoice_id)
    return plan_allocations(invoices, amount)
