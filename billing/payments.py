"""
Payment ledger: recording, editing and reversing customer payments.

A payment always decrements the customer balance by its full amount and
settles open invoices oldest first. Whatever is not allocated stays on the
customer as credit, unless ``BILLING_OVERPAYMENT_POLICY`` is ``"reject"``.
"""

import logging
import uuid

from django.conf import settings
from django.db.models import Sum
from django.utils import timezone

from billing.allocation import allocate
from billing.exceptions import BillingValidationError
from billing.locking import adjust_customer_balance, ledger_transaction, lock_customers, lock_payment
from billing.models import DocumentSequence, Invoice, Payment, PaymentAllocation
from billing.records import ZERO, to_money
from billing.sequences import issue_number

logger = logging.getLogger("billing.ledger")

OVERPAYMENT_REJECT = "reject"


def _validated_amount(amount):
    try:
        amount = to_money(amount)
    except ValueError:
        raise BillingValidationError("Amount must be a number.", code="invalid_amount", field="amount")
    if amount <= 0:
        raise BillingValidationError("Amount must be greater than zero.", code="invalid_amount", field="amount")
    return amount


def _plan(customer_id, amount, prefer_invoice_id=None):
    plan = allocate(customer_id, amount, prefer_invoice_id=prefer_invoice_id, lock=True)
    if plan.unallocated_amount > 0 and settings.BILLING_OVERPAYMENT_POLICY == OVERPAYMENT_REJECT:
        raise BillingValidationError(
            f"Payment exceeds the customer's outstanding invoices by {plan.unallocated_amount}.",
            code="overpayment",
            field="amount",
        )
    return plan


def shift_invoice_paid(invoice, delta):
    invoice.paid_amount = invoice.paid_amount + delta
    invoice.recalculate()
    invoice.save(update_fields=["paid_amount", "net_amount", "balance_due", "status", "updated_at"])


def _apply_plan(payment, plan):
    PaymentAllocation.objects.bulk_create(
        [
            PaymentAllocation(payment=payment, invoice=line.invoice, allocated_amount=line.allocated_amount)
            for line in plan.allocations
        ]
    )
    for line in plan.allocations:
        shift_invoice_paid(line.invoice, line.allocated_amount)
    adjust_customer_balance(payment.customer_id, -payment.amount)
    payment.unallocated_amount = plan.unallocated_amount


def _reverse(payment):
    allocations = list(payment.allocations.all())
    invoices = Invoice.objects.select_for_update().filter(pk__in=[a.invoice_id for a in allocations]).order_by("pk")
    invoices_by_id = {invoice.pk: invoice for invoice in invoices}
    for allocation in allocations:
        shift_invoice_paid(invoices_by_id[allocation.invoice_id], -allocation.allocated_amount)
    payment.allocations.all().delete()
    adjust_customer_balance(payment.customer_id, payment.amount)


def _check_overpayment_after_reversal(payment, customer_id, amount):
    """Apply the reject policy to an edited payment before its old allocations are undone."""
    if settings.BILLING_OVERPAYMENT_POLICY != OVERPAYMENT_REJECT:
        return
    outstanding = Invoice.objects.filter(customer_id=customer_id).exclude(status=Invoice.Status.PAID)
    open_due = outstanding.aggregate(total=Sum("balance_due"))["total"] or ZERO
    released = (
        payment.allocations.filter(invoice__customer_id=customer_id).aggregate(total=Sum("allocated_amount"))["total"]
        or ZERO
    )
    # What this payment settled on the customer's invoices becomes due again once it is reversed.
    if amount > open_due + released:
        raise BillingValidationError(
            f"Payment exceeds the customer's outstanding invoices by {amount - open_due - released}.",
            code="overpayment",
            field="amount",
        )


def record_payment(customer, amount, payment_date=None, notes="", prefer_invoice_id=None):
    """
    Create a payment for an already locked customer.

    Must be called inside ``ledger_transaction()``; ``create_payment`` and the
    invoice ledger both go through here.
    """
    plan = _plan(customer.pk, amount, prefer_invoice_id=prefer_invoice_id)
    issued = issue_number(DocumentSequence.Kind.PAYMENT)
    payment = Payment.objects.create(
        payment_number=issued.number,
        sequence_no=issued.sequence_no,
        customer=customer,
        amount=amount,
        payment_date=payment_date or timezone.localdate(),
        notes=notes or "",
    )
    _apply_plan(payment, plan)
    return payment


def _log(event, payment, **extra):
    logger.info(
        event,
        extra={
            "operation": event,
            "entity": "payment",
            "entity_id": payment.pk,
            "customer_id": payment.customer_id,
            "document_number": payment.payment_number,
            "amount": payment.amount,
            **extra,
        },
    )


def create_payment(data):
    amount = _validated_amount(data.amount)
    with ledger_transaction("payment.create"):
        customers = lock_customers(data.customer_id)
        customer = next(iter(customers.values()))
        payment = record_payment(customer, amount, payment_date=data.payment_date, notes=data.notes)

    _log("payment.create", payment, unallocated_amount=payment.unallocated_amount)
    return payment


def update_payment(payment_id, data):
    """Reverse the payment's previous effect, then re-apply it with the new customer and amount."""
    amount = _validated_amount(data.amount)
    with ledger_transaction("payment.update"):
        payment, customers = lock_payment(payment_id, extra_customer_ids=[data.customer_id])
        customer = customers[uuid.UUID(str(data.customer_id))]
        _check_overpayment_after_reversal(payment, customer.pk, amount)
        _reverse(payment)

        payment.customer = customer
        payment.amount = amount
        if data.payment_date is not None:
            payment.payment_date = data.payment_date
        if data.notes is not None:
            payment.notes = data.notes

        plan = _plan(payment.customer_id, amount)
        payment.save(update_fields=["customer", "amount", "payment_date", "notes", "updated_at"])
        _apply_plan(payment, plan)

    _log("payment.update", payment, unallocated_amount=payment.unallocated_amount)
    return payment


def delete_payment(payment_id):
    with ledger_transaction("payment.delete"):
        payment, _ = lock_payment(payment_id)
        payment_pk = payment.pk
        _reverse(payment)
        payment.delete()

    payment.pk = payment_pk
    _log("payment.delete", payment)
    return payment
