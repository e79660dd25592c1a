"""
Invoice ledger: creating, editing and deleting invoices.

The customer balance moves by each invoice's balance due. Money received
together with an invoice is recorded as a real payment, allocated to that
invoice first, so payment history always shows where paid amounts came from.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.utils import timezone

from billing.exceptions import BillingNotFound, BillingValidationError
from billing.locking import adjust_customer_balance, ledger_transaction, lock_customers, lock_invoice
from billing.models import DocumentSequence, Invoice, InvoiceItem, PaymentAllocation, Product
from billing.payments import record_payment
from billing.records import ZERO, to_money
from billing.sequences import issue_number

logger = logging.getLogger("billing.ledger")


@dataclass
class _Line:
    product: Product
    quantity: Decimal
    unit_price: Decimal
    item_id: uuid.UUID | None = None

    @property
    def total(self):
        return to_money(self.quantity * self.unit_price)


def _money_field(value, field_name, code):
    try:
        amount = to_money(value)
    except ValueError:
        raise BillingValidationError(f"{field_name} must be a number.", code=code, field=field_name)
    if amount < 0:
        raise BillingValidationError(f"{field_name} cannot be negative.", code=code, field=field_name)
    return amount


def _check_items_shape(items):
    if not items:
        raise BillingValidationError("At least one item is required.", code="items_required", field="items")
    for item in items:
        if item.quantity is None or item.quantity <= 0:
            raise BillingValidationError("Quantity must be greater than zero.", code="invalid_quantity", field="items")
        if item.unit_price is not None and item.unit_price <= 0:
            raise BillingValidationError("Unit price must be greater than zero.", code="invalid_unit_price", field="items")


def _resolve_lines(items):
    product_ids = {item.product_id for item in items}
    products = {product.pk: product for product in Product.objects.filter(pk__in=product_ids)}
    lines = []
    for item in items:
        product = products.get(item.product_id)
        if product is None:
            raise BillingNotFound("Product was not found.", code="product_not_found", field="items")
        unit_price = to_money(item.unit_price if item.unit_price is not None else product.price)
        if unit_price <= 0:
            raise BillingValidationError(
                f"Product {product.code} has no price; supply a unit price.",
                code="invalid_unit_price",
                field="items",
            )
        lines.append(_Line(product=product, quantity=item.quantity, unit_price=unit_price, item_id=item.item_id))
    return lines


def _check_amounts(subtotal, discount, paid):
    if discount > subtotal:
        raise BillingValidationError(
            "Discount cannot exceed the invoice subtotal.", code="discount_exceeds_subtotal", field="discount_amount"
        )
    net = max(subtotal - discount, ZERO)
    if paid > net:
        raise BillingValidationError("Paid amount cannot exceed the net amount.", code="paid_exceeds_net", field="paid_amount")


def _check_item_ids(invoice, lines):
    existing = set(invoice.items.values_list("id", flat=True))
    seen = set()
    for line in lines:
        if line.item_id is None:
            continue
        if line.item_id not in existing or line.item_id in seen:
            raise BillingValidationError(
                "Item does not belong to this invoice.", code="unknown_invoice_item", field="items"
            )
        seen.add(line.item_id)


def _sync_items(invoice, lines):
    existing = {item.pk: item for item in invoice.items.all()}
    kept = set()
    new_items = []
    for position, line in enumerate(lines):
        if line.item_id is None:
            new_items.append(
                InvoiceItem(
                    invoice=invoice,
                    product=line.product,
                    position=position,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total=line.total,
                )
            )
            continue

        item = existing[line.item_id]
        kept.add(item.pk)
        changed = (
            item.product_id != line.product.pk
            or item.position != position
            or item.quantity != line.quantity
            or item.unit_price != line.unit_price
        )
        if changed:
            item.product = line.product
            item.position = position
            item.quantity = line.quantity
            item.unit_price = line.unit_price
            item.total = line.total
            item.save(update_fields=["product", "position", "quantity", "unit_price", "total"])

    stale = [pk for pk in existing if pk not in kept]
    if stale:
        InvoiceItem.objects.filter(pk__in=stale).delete()
    InvoiceItem.objects.bulk_create(new_items)


def _log(event, invoice):
    logger.info(
        event,
        extra={
            "operation": event,
            "entity": "invoice",
            "entity_id": invoice.pk,
            "customer_id": invoice.customer_id,
            "document_number": invoice.invoice_number,
            "amount": invoice.net_amount,
        },
    )


def create_invoice(data):
    if data.customer_id is None:
        raise BillingValidationError("Customer is required.", code="customer_required", field="customer")
    _check_items_shape(data.items)
    discount = _money_field(data.discount_amount, "discount_amount", "invalid_amount")
    paid = _money_field(data.paid_amount, "paid_amount", "invalid_amount")

    with ledger_transaction("invoice.create"):
        customers = lock_customers(data.customer_id)
        customer = next(iter(customers.values()))
        lines = _resolve_lines(data.items)
        subtotal = sum((line.total for line in lines), ZERO)
        _check_amounts(subtotal, discount, paid)

        issued = issue_number(DocumentSequence.Kind.INVOICE)
        invoice = Invoice(
            invoice_number=issued.number,
            sequence_no=issued.sequence_no,
            customer=customer,
            invoice_date=data.invoice_date or timezone.localdate(),
            notes=data.notes or "",
            total_amount=subtotal,
            discount_amount=discount,
            paid_amount=ZERO,
        )
        invoice.recalculate()
        invoice.save()
        _sync_items(invoice, lines)
        adjust_customer_balance(customer.pk, invoice.balance_due)

        if paid > 0:
            record_payment(
                customer,
                paid,
                payment_date=invoice.invoice_date,
                notes=f"Paid with invoice {invoice.invoice_number}",
                prefer_invoice_id=invoice.pk,
            )
            invoice.refresh_from_db()

    _log("invoice.create", invoice)
    return invoice


def update_invoice(invoice_id, data):
    """
    Re-price an invoice from a full item list.

    Items carrying an ``item_id`` are updated in place, items without one are
    added and existing items that are not listed are removed. The paid amount
    can only grow; the difference is recorded as a new payment on this invoice.
    Only invoices without payments can move to another customer.
    """
    _check_items_shape(data.items)
    discount = _money_field(data.discount_amount, "discount_amount", "invalid_amount")
    paid = None if data.paid_amount is None else _money_field(data.paid_amount, "paid_amount", "invalid_amount")
    extra_customers = [data.customer_id] if data.customer_id is not None else []

    with ledger_transaction("invoice.update"):
        invoice, customers = lock_invoice(invoice_id, extra_customer_ids=extra_customers)
        old_customer_id = invoice.customer_id
        old_balance_due = invoice.balance_due
        old_paid = invoice.paid_amount
        new_customer_id = uuid.UUID(str(data.customer_id)) if data.customer_id is not None else old_customer_id

        if paid is None:
            paid = old_paid
        if paid < old_paid:
            raise BillingValidationError(
                "Paid amount cannot be decreased; delete or edit the payment instead.",
                code="paid_amount_decrease",
                field="paid_amount",
            )
        lines = _resolve_lines(data.items)
        _check_item_ids(invoice, lines)
        subtotal = sum((line.total for line in lines), ZERO)
        _check_amounts(subtotal, discount, paid)
        if new_customer_id != old_customer_id and invoice.allocations.exists():
            raise BillingValidationError(
                "An invoice with recorded payments cannot move to another customer; delete or edit its payments first.",
                code="invoice_has_payments",
                field="customer",
            )

        _sync_items(invoice, lines)
        invoice.customer = customers[new_customer_id]
        invoice.total_amount = subtotal
        invoice.discount_amount = discount
        if data.invoice_date is not None:
            invoice.invoice_date = data.invoice_date
        if data.notes is not None:
            invoice.notes = data.notes
        invoice.recalculate()
        invoice.save()

        if new_customer_id == old_customer_id:
            adjust_customer_balance(old_customer_id, invoice.balance_due - old_balance_due)
        else:
            adjust_customer_balance(old_customer_id, -old_balance_due)
            adjust_customer_balance(new_customer_id, invoice.balance_due)

        if paid > old_paid:
            record_payment(
                invoice.customer,
                paid - old_paid,
                notes=f"Paid on invoice {invoice.invoice_number}",
                prefer_invoice_id=invoice.pk,
            )
            invoice.refresh_from_db()

    _log("invoice.update", invoice)
    return invoice


def delete_invoice(invoice_id):
    with ledger_transaction("invoice.delete"):
        invoice, _ = lock_invoice(invoice_id)
        invoice_pk = invoice.pk
        PaymentAllocation.objects.filter(invoice=invoice).delete()
        invoice.items.all().delete()
        invoice.delete()
        adjust_customer_balance(invoice.customer_id, -invoice.balance_due)

    # delete() clears the primary key on the instance.
    invoice.pk = invoice_pk
    _log("invoice.delete", invoice)
    return invoice
