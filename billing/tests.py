import threading
import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import Mock, patch

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, OperationalError, connection
from django.db.models import Sum
from django.db.models.query import QuerySet
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from rest_framework.test import APIClient

from billing import masterdata, payments, sequences
from billing.allocation import allocate, plan_allocations
from billing.exceptions import (
    BillingConflict,
    BillingNotFound,
    BillingValidationError,
    ContentionError,
    LedgerInternalError,
    SequenceExhausted,
)
from billing.invoices import create_invoice, delete_invoice, update_invoice
from billing.locking import ledger_transaction
from billing.models import Customer, DocumentSequence, Invoice, Payment, PaymentAllocation, Product
from billing.payments import create_payment, delete_payment, update_payment
from billing.records import InvoiceInput, InvoiceItemInput, InvoiceUpdateInput, PaymentInput
from billing.sequences import peek_next_number
from core.models import AuditLog


def D(value):
    return Decimal(value)


class LedgerFixtures:
    def make_customer(self, name="Acme Trading", code=None):
        code = code or f"T{uuid.uuid4().hex[:8]}"
        return Customer.objects.create(code=code, name=name)

    def make_product(self, price="10.00", code=None, name="Widget"):
        code = code or f"P{uuid.uuid4().hex[:8]}"
        return Product.objects.create(code=code, name=name, price=D(price))

    def invoice(self, customer, product, quantity="1", unit_price=None, discount="0", paid="0", invoice_date=None):
        return create_invoice(
            InvoiceInput(
                customer_id=customer.pk,
                items=(InvoiceItemInput(product_id=product.pk, quantity=D(quantity), unit_price=unit_price and D(unit_price)),),
                discount_amount=D(discount),
                paid_amount=D(paid),
                invoice_date=invoice_date,
            )
        )

    def pay(self, customer, amount, payment_date=None):
        return create_payment(PaymentInput(customer_id=customer.pk, amount=D(amount), payment_date=payment_date))

    def balance(self, customer):
        customer.refresh_from_db()
        return customer.balance

    def assert_ledger_consistent(self):
        for invoice in Invoice.objects.all():
            self.assertEqual(invoice.paid_amount + invoice.balance_due, invoice.net_amount)
            if invoice.balance_due <= 0:
                self.assertEqual(invoice.status, Invoice.Status.PAID)
            elif invoice.paid_amount > 0:
                self.assertEqual(invoice.status, Invoice.Status.PARTIAL)
            else:
                self.assertEqual(invoice.status, Invoice.Status.PENDING)
            allocated = invoice.allocations.aggregate(total=Sum("allocated_amount"))["total"] or D("0")
            self.assertEqual(allocated, invoice.paid_amount)
        for payment in Payment.objects.all():
            allocated = payment.allocations.aggregate(total=Sum("allocated_amount"))["total"] or D("0")
            self.assertLessEqual(allocated, payment.amount)


class AllocationPlanTests(TestCase):
    def _open_invoice(self, due, status=Invoice.Status.PENDING):
        return Invoice(invoice_number=f"X{due}", balance_due=D(due), status=status)

    def test_plan_walks_invoices_in_order_and_reports_remainder(self):
        first = self._open_invoice("50.00")
        second = self._open_invoice("30.00")

        plan = plan_allocations([first, second], D("100.00"))

        self.assertEqual([line.allocated_amount for line in plan.allocations], [D("50.00"), D("30.00")])
        self.assertEqual(plan.unallocated_amount, D("20.00"))
        self.assertEqual(plan.allocated_amount, D("80.00"))

    def test_plan_stops_when_amount_is_used_up(self):
        invoices = [self._open_invoice("50.00"), self._open_invoice("30.00"), self._open_invoice("10.00")]

        plan = plan_allocations(invoices, D("60.00"))

        self.assertEqual(len(plan.allocations), 2)
        self.assertEqual(plan.allocations[1].allocated_amount, D("10.00"))
        self.assertEqual(plan.allocations[1].remaining_balance, D("20.00"))
        self.assertEqual(plan.unallocated_amount, D("0.00"))

    def test_plan_skips_paid_invoices(self):
        paid = self._open_invoice("0.00", status=Invoice.Status.PAID)
        open_invoice = self._open_invoice("25.00")

        plan = plan_allocations([paid, open_invoice], D("10.00"))

        self.assertEqual([line.invoice for line in plan.allocations], [open_invoice])


class PaymentAllocatorTests(LedgerFixtures, TestCase):
    def setUp(self):
        self.customer = self.make_customer()
        self.product = self.make_product("10.00")

    def test_oldest_invoice_is_settled_first(self):
        later = self.invoice(self.customer, self.product, unit_price="30.00", invoice_date=date(2024, 1, 2))
        earlier = self.invoice(self.customer, self.product, unit_price="50.00", invoice_date=date(2024, 1, 1))

        payment = self.pay(self.customer, "60.00")

        earlier.refresh_from_db()
        later.refresh_from_db()
        self.assertEqual(earlier.status, Invoice.Status.PAID)
        self.assertEqual(earlier.balance_due, D("0.00"))
        self.assertEqual(later.status, Invoice.Status.PARTIAL)
        self.assertEqual(later.balance_due, D("20.00"))
        allocations = {a.invoice_id: a.allocated_amount for a in payment.allocations.all()}
        self.assertEqual(allocations, {earlier.pk: D("50.00"), later.pk: D("10.00")})
        self.assertEqual(self.balance(self.customer), D("20.00"))
        self.assert_ledger_consistent()

    def test_same_day_invoices_follow_issue_order(self):
        first = self.invoice(self.customer, self.product, unit_price="40.00", invoice_date=date(2024, 3, 1))
        second = self.invoice(self.customer, self.product, unit_price="40.00", invoice_date=date(2024, 3, 1))

        plan = allocate(self.customer.pk, D("50.00"))

        self.assertEqual([line.invoice_id for line in plan.allocations], [first.pk, second.pk])
        self.assertEqual(plan.allocations[1].allocated_amount, D("10.00"))

    def test_allocate_is_read_only(self):
        invoice = self.invoice(self.customer, self.product, unit_price="40.00")

        allocate(self.customer.pk, D("40.00"))

        invoice.refresh_from_db()
        self.assertEqual(invoice.balance_due, D("40.00"))
        self.assertFalse(PaymentAllocation.objects.exists())

    def test_allocate_rejects_non_positive_amount_and_unknown_customer(self):
        with self.assertRaises(BillingValidationError) as ctx:
            allocate(self.customer.pk, D("0"))
        self.assertEqual(ctx.exception.code, "invalid_amount")

        with self.assertRaises(BillingNotFound):
            allocate(uuid.uuid4(), D("10.00"))


class PaymentLedgerTests(LedgerFixtures, TestCase):
    def setUp(self):
        self.customer = self.make_customer()
        self.product = self.make_product("100.00")

    def test_invoice_then_two_payments_end_to_end(self):
        invoice = self.invoice(self.customer, self.product)
        self.assertEqual(self.balance(self.customer), D("100.00"))
        self.assertEqual(invoice.status, Invoice.Status.PENDING)

        self.pay(self.customer, "40.00")
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)
        self.assertEqual(invoice.balance_due, D("60.00"))
        self.assertEqual(self.balance(self.customer), D("60.00"))

        self.pay(self.customer, "60.00")
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(invoice.balance_due, D("0.00"))
        self.assertEqual(self.balance(self.customer), D("0.00"))
        self.assert_ledger_consistent()

    def test_payment_numbers_are_sequential(self):
        self.invoice(self.customer, self.product)
        first = self.pay(self.customer, "10.00")
        second = self.pay(self.customer, "10.00")

        self.assertEqual(first.payment_number, "PAY1")
        self.assertEqual(second.payment_number, "PAY2")
        self.assertEqual(second.sequence_no, first.sequence_no + 1)

    def test_delete_restores_invoices_and_balance_exactly(self):
        first = self.invoice(self.customer, self.product, unit_price="70.00", invoice_date=date(2024, 1, 1))
        second = self.invoice(self.customer, self.product, unit_price="50.00", invoice_date=date(2024, 1, 2))
        before = {
            invoice.pk: (invoice.paid_amount, invoice.balance_due, invoice.status)
            for invoice in Invoice.objects.all()
        }
        balance_before = self.balance(self.customer)

        payment = self.pay(self.customer, "100.00")
        delete_payment(payment.pk)

        after = {
            invoice.pk: (invoice.paid_amount, invoice.balance_due, invoice.status)
            for invoice in Invoice.objects.all()
        }
        self.assertEqual(after, before)
        self.assertEqual(self.balance(self.customer), balance_before)
        self.assertFalse(Payment.objects.exists())
        self.assertFalse(PaymentAllocation.objects.filter(invoice__in=[first, second]).exists())

    def test_update_reverses_then_reapplies_and_keeps_number(self):
        invoice = self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "30.00")

        updated = update_payment(payment.pk, PaymentInput(customer_id=self.customer.pk, amount=D("80.00")))

        invoice.refresh_from_db()
        self.assertEqual(updated.payment_number, payment.payment_number)
        self.assertEqual(invoice.paid_amount, D("80.00"))
        self.assertEqual(invoice.balance_due, D("20.00"))
        self.assertEqual(self.balance(self.customer), D("20.00"))
        self.assertEqual(updated.allocations.get().allocated_amount, D("80.00"))
        self.assert_ledger_consistent()

    def test_update_moves_payment_to_another_customer(self):
        other = self.make_customer(name="Other Co")
        own_invoice = self.invoice(self.customer, self.product)
        other_invoice = self.invoice(other, self.product)
        payment = self.pay(self.customer, "100.00")

        update_payment(payment.pk, PaymentInput(customer_id=other.pk, amount=D("100.00")))

        own_invoice.refresh_from_db()
        other_invoice.refresh_from_db()
        self.assertEqual(own_invoice.status, Invoice.Status.PENDING)
        self.assertEqual(other_invoice.status, Invoice.Status.PAID)
        self.assertEqual(self.balance(self.customer), D("100.00"))
        self.assertEqual(self.balance(other), D("0.00"))

    def test_overpayment_becomes_credit_by_default(self):
        self.invoice(self.customer, self.product)

        payment = self.pay(self.customer, "150.00")

        self.assertEqual(payment.unallocated_amount, D("50.00"))
        self.assertEqual(self.balance(self.customer), D("-50.00"))
        self.assert_ledger_consistent()

    @override_settings(BILLING_OVERPAYMENT_POLICY="reject")
    def test_overpayment_is_rejected_when_configured(self):
        self.invoice(self.customer, self.product)

        with self.assertRaises(BillingValidationError) as ctx:
            self.pay(self.customer, "150.00")

        self.assertEqual(ctx.exception.code, "overpayment")
        self.assertFalse(Payment.objects.exists())
        self.assertEqual(self.balance(self.customer), D("100.00"))

    @override_settings(BILLING_OVERPAYMENT_POLICY="reject")
    def test_rejected_payment_edit_leaves_previous_allocations_untouched(self):
        invoice = self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "100.00")

        with patch("billing.payments._reverse") as reverse:
            with self.assertRaises(BillingValidationError) as ctx:
                update_payment(payment.pk, PaymentInput(customer_id=self.customer.pk, amount=D("120.00")))

        self.assertEqual(ctx.exception.code, "overpayment")
        reverse.assert_not_called()
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(self.balance(self.customer), D("0.00"))

    @override_settings(BILLING_OVERPAYMENT_POLICY="reject")
    def test_payment_edit_within_released_amount_is_allowed_under_reject(self):
        invoice = self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "100.00")

        update_payment(payment.pk, PaymentInput(customer_id=self.customer.pk, amount=D("90.00")))

        invoice.refresh_from_db()
        self.assertEqual(invoice.balance_due, D("10.00"))
        self.assertEqual(self.balance(self.customer), D("10.00"))
        self.assert_ledger_consistent()

    def test_deleted_payment_keeps_its_id_for_logging(self):
        self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "25.00")

        with self.assertLogs("billing.ledger", level="INFO") as cm:
            deleted = delete_payment(payment.pk)

        self.assertEqual(deleted.pk, payment.pk)
        record = next(record for record in cm.records if record.getMessage() == "payment.delete")
        self.assertEqual(record.entity_id, payment.pk)
        self.assertEqual(record.document_number, payment.payment_number)

    def test_payment_requires_positive_amount(self):
        with self.assertRaises(BillingValidationError) as ctx:
            self.pay(self.customer, "0.00")
        self.assertEqual(ctx.exception.code, "invalid_amount")

    def test_payment_for_missing_customer_is_not_found(self):
        with self.assertRaises(BillingNotFound):
            create_payment(PaymentInput(customer_id=uuid.uuid4(), amount=D("5.00")))


class InvoiceLedgerTests(LedgerFixtures, TestCase):
    def setUp(self):
        self.customer = self.make_customer()
        self.product = self.make_product("100.00")

    def test_create_derives_amounts_and_numbers(self):
        invoice = create_invoice(
            InvoiceInput(
                customer_id=self.customer.pk,
                items=(
                    InvoiceItemInput(product_id=self.product.pk, quantity=D("2")),
                    InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), unit_price=D("25.50")),
                ),
                discount_amount=D("5.50"),
            )
        )

        self.assertEqual(invoice.invoice_number, "INV1")
        self.assertEqual(invoice.total_amount, D("225.50"))
        self.assertEqual(invoice.net_amount, D("220.00"))
        self.assertEqual(invoice.balance_due, D("220.00"))
        self.assertEqual(invoice.status, Invoice.Status.PENDING)
        self.assertEqual([item.unit_price for item in invoice.items.all()], [D("100.00"), D("25.50")])
        self.assertEqual(self.balance(self.customer), D("220.00"))

    def test_paid_amount_at_creation_is_recorded_as_payment(self):
        older = self.invoice(self.customer, self.product, invoice_date=date(2024, 1, 1))

        invoice = self.invoice(self.customer, self.product, paid="30.00", invoice_date=date(2024, 2, 1))

        self.assertEqual(invoice.paid_amount, D("30.00"))
        self.assertEqual(invoice.balance_due, D("70.00"))
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)
        payment = Payment.objects.get()
        self.assertEqual(payment.amount, D("30.00"))
        self.assertEqual(payment.allocations.get().invoice, invoice)
        older.refresh_from_db()
        self.assertEqual(older.paid_amount, D("0.00"))
        self.assertEqual(self.balance(self.customer), D("170.00"))
        self.assert_ledger_consistent()

    def test_fully_paid_invoice_is_paid(self):
        invoice = self.invoice(self.customer, self.product, paid="100.00")
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(self.balance(self.customer), D("0.00"))

    def test_invalid_input_is_rejected_before_any_write(self):
        cases = [
            (InvoiceInput(customer_id=self.customer.pk, items=()), "items_required"),
            (
                InvoiceInput(customer_id=self.customer.pk, items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("0")),)),
                "invalid_quantity",
            ),
            (
                InvoiceInput(
                    customer_id=self.customer.pk,
                    items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), unit_price=D("-1")),),
                ),
                "invalid_unit_price",
            ),
            (
                InvoiceInput(
                    customer_id=self.customer.pk,
                    items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1")),),
                    discount_amount=D("100.01"),
                ),
                "discount_exceeds_subtotal",
            ),
            (
                InvoiceInput(
                    customer_id=self.customer.pk,
                    items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1")),),
                    discount_amount=D("10.00"),
                    paid_amount=D("95.00"),
                ),
                "paid_exceeds_net",
            ),
            (InvoiceInput(customer_id=None, items=()), "customer_required"),
        ]
        for record, code in cases:
            with self.subTest(code=code):
                with self.assertRaises(BillingValidationError) as ctx:
                    create_invoice(record)
                self.assertEqual(ctx.exception.code, code)

        self.assertFalse(Invoice.objects.exists())
        self.assertEqual(self.balance(self.customer), D("0.00"))
        self.assertEqual(peek_next_number(DocumentSequence.Kind.INVOICE), "INV1")

    def test_missing_customer_or_product_is_not_found(self):
        with self.assertRaises(BillingNotFound):
            create_invoice(
                InvoiceInput(customer_id=uuid.uuid4(), items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1")),))
            )
        with self.assertRaises(BillingNotFound) as ctx:
            create_invoice(
                InvoiceInput(customer_id=self.customer.pk, items=(InvoiceItemInput(product_id=uuid.uuid4(), quantity=D("1")),))
            )
        self.assertEqual(ctx.exception.code, "product_not_found")

    def test_update_then_revert_restores_balance(self):
        invoice = self.invoice(self.customer, self.product, quantity="2")
        item = invoice.items.get()
        self.assertEqual(self.balance(self.customer), D("200.00"))

        update_invoice(
            invoice.pk,
            InvoiceUpdateInput(items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), unit_price=D("150.00"), item_id=item.pk),)),
        )
        self.assertEqual(self.balance(self.customer), D("150.00"))

        reverted = update_invoice(
            invoice.pk,
            InvoiceUpdateInput(items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("2"), unit_price=D("100.00"), item_id=item.pk),)),
        )
        self.assertEqual(self.balance(self.customer), D("200.00"))
        self.assertEqual(reverted.net_amount, D("200.00"))
        self.assertEqual(reverted.items.get().pk, item.pk)

    def test_update_syncs_items_by_id(self):
        other_product = self.make_product("5.00")
        invoice = create_invoice(
            InvoiceInput(
                customer_id=self.customer.pk,
                items=(
                    InvoiceItemInput(product_id=self.product.pk, quantity=D("1")),
                    InvoiceItemInput(product_id=other_product.pk, quantity=D("4")),
                ),
            )
        )
        kept, dropped = list(invoice.items.all())

        updated = update_invoice(
            invoice.pk,
            InvoiceUpdateInput(
                items=(
                    InvoiceItemInput(product_id=self.product.pk, quantity=D("3"), item_id=kept.pk),
                    InvoiceItemInput(product_id=other_product.pk, quantity=D("2")),
                )
            ),
        )

        items = list(updated.items.all())
        self.assertEqual(len(items), 2)
        self.assertEqual(items[0].pk, kept.pk)
        self.assertEqual(items[0].quantity, D("3.00"))
        self.assertNotIn(dropped.pk, {item.pk for item in items})
        self.assertEqual(updated.total_amount, D("310.00"))

    def test_update_rejects_foreign_item_id(self):
        invoice = self.invoice(self.customer, self.product)
        foreign = self.invoice(self.customer, self.product).items.get()

        with self.assertRaises(BillingValidationError) as ctx:
            update_invoice(
                invoice.pk,
                InvoiceUpdateInput(items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), item_id=foreign.pk),)),
            )
        self.assertEqual(ctx.exception.code, "unknown_invoice_item")

    def test_paid_amount_cannot_decrease(self):
        invoice = self.invoice(self.customer, self.product, paid="50.00")
        item = invoice.items.get()

        with self.assertRaises(BillingValidationError) as ctx:
            update_invoice(
                invoice.pk,
                InvoiceUpdateInput(
                    items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), item_id=item.pk),),
                    paid_amount=D("20.00"),
                ),
            )

        self.assertEqual(ctx.exception.code, "paid_amount_decrease")
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, D("50.00"))

    def test_paid_amount_increase_is_recorded_as_new_payment(self):
        invoice = self.invoice(self.customer, self.product, paid="50.00")
        item = invoice.items.get()

        updated = update_invoice(
            invoice.pk,
            InvoiceUpdateInput(
                items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), item_id=item.pk),),
                paid_amount=D("80.00"),
            ),
        )

        self.assertEqual(updated.paid_amount, D("80.00"))
        self.assertEqual(updated.status, Invoice.Status.PARTIAL)
        self.assertEqual(sorted(Payment.objects.values_list("amount", flat=True)), [D("30.00"), D("50.00")])
        self.assertEqual(self.balance(self.customer), D("20.00"))
        self.assert_ledger_consistent()

    def test_raising_net_above_paid_reopens_paid_invoice(self):
        invoice = self.invoice(self.customer, self.product, paid="100.00")
        item = invoice.items.get()

        updated = update_invoice(
            invoice.pk,
            InvoiceUpdateInput(items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("2"), item_id=item.pk),)),
        )

        self.assertEqual(updated.status, Invoice.Status.PARTIAL)
        self.assertEqual(updated.balance_due, D("100.00"))
        self.assertEqual(self.balance(self.customer), D("100.00"))

    def test_changing_customer_moves_balance_due(self):
        other = self.make_customer(name="Other Co")
        invoice = self.invoice(self.customer, self.product, quantity="2")
        item = invoice.items.get()

        updated = update_invoice(
            invoice.pk,
            InvoiceUpdateInput(
                customer_id=other.pk,
                items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("3"), item_id=item.pk),),
            ),
        )

        self.assertEqual(updated.customer_id, other.pk)
        self.assertEqual(self.balance(self.customer), D("0.00"))
        self.assertEqual(self.balance(other), D("300.00"))
        self.assert_ledger_consistent()

    def test_invoice_with_payments_cannot_change_customer(self):
        other = self.make_customer(name="Other Co")
        invoice = self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "40.00")
        item = invoice.items.get()

        with self.assertRaises(BillingValidationError) as ctx:
            update_invoice(
                invoice.pk,
                InvoiceUpdateInput(
                    customer_id=other.pk,
                    items=(InvoiceItemInput(product_id=self.product.pk, quantity=D("1"), item_id=item.pk),),
                ),
            )
        self.assertEqual(ctx.exception.code, "invoice_has_payments")
        invoice.refresh_from_db()
        self.assertEqual(invoice.customer_id, self.customer.pk)
        self.assertEqual(self.balance(self.customer), D("60.00"))
        self.assertEqual(self.balance(other), D("0.00"))

        delete_payment(payment.pk)

        invoice.refresh_from_db()
        self.assertEqual(invoice.balance_due, D("100.00"))
        self.assertEqual(self.balance(self.customer), D("100.00"))
        self.assertEqual(self.balance(other), D("0.00"))
        self.assert_ledger_consistent()

    def test_delete_reverses_balance_due_not_net(self):
        invoice = self.invoice(self.customer, self.product)
        self.pay(self.customer, "40.00")
        self.assertEqual(self.balance(self.customer), D("60.00"))

        with self.assertLogs("billing.ledger", level="INFO") as cm:
            deleted = delete_invoice(invoice.pk)

        self.assertEqual(deleted.pk, invoice.pk)
        record = next(record for record in cm.records if record.getMessage() == "invoice.delete")
        self.assertEqual(record.entity_id, invoice.pk)

        self.assertFalse(Invoice.objects.filter(pk=invoice.pk).exists())
        self.assertFalse(PaymentAllocation.objects.exists())
        self.assertEqual(self.balance(self.customer), D("0.00"))
        self.assertEqual(Payment.objects.count(), 1)

    def test_missing_invoice_is_not_found(self):
        with self.assertRaises(BillingNotFound):
            delete_invoice(uuid.uuid4())


class SequenceTests(LedgerFixtures, TestCase):
    def test_issued_codes_skip_existing_numbers(self):
        Customer.objects.create(code="CUST1", name="Imported")

        customer = masterdata.save_customer({"name": "Fresh"})

        self.assertEqual(customer.code, "CUST2")

    @override_settings(BILLING_SEQUENCE_MAX_RETRIES=2)
    def test_sequence_gives_up_after_bounded_retries(self):
        counter_before = DocumentSequence.objects.filter(kind="product").values_list("last_number", flat=True).first()

        with patch("billing.sequences._is_taken", return_value=True):
            with self.assertRaises(SequenceExhausted) as ctx:
                masterdata.save_product({"name": "New", "price": D("3.00")})

        self.assertTrue(ctx.exception.retryable)
        self.assertFalse(Product.objects.exists())
        counter_after = DocumentSequence.objects.filter(kind="product").values_list("last_number", flat=True).first()
        self.assertEqual(counter_after, counter_before)

    def test_collision_jumps_past_block_of_legacy_numbers(self):
        for number in range(1, 13):
            Product.objects.create(code=str(number), name=f"Legacy {number}", price=D("1.00"))

        self.assertEqual(peek_next_number(DocumentSequence.Kind.PRODUCT), "13")
        product = masterdata.save_product({"name": "New", "price": D("3.00")})

        self.assertEqual(product.code, "13")
        self.assertEqual(masterdata.save_product({"name": "Newer", "price": D("3.00")}).code, "14")

    def test_previewed_codes_submitted_explicitly_keep_issuing_working(self):
        rounds = settings.BILLING_SEQUENCE_MAX_RETRIES + 2
        codes = []
        for index in range(rounds):
            code = peek_next_number(DocumentSequence.Kind.PRODUCT)
            masterdata.save_product({"code": code, "name": f"Typed {index}", "price": D("1.00")})
            codes.append(code)

        self.assertEqual(codes, [str(number) for number in range(1, rounds + 1)])
        self.assertEqual(peek_next_number(DocumentSequence.Kind.PRODUCT), str(rounds + 1))
        self.assertEqual(masterdata.save_product({"name": "Auto", "price": D("1.00")}).code, str(rounds + 1))

    def test_free_form_codes_leave_counter_alone(self):
        masterdata.save_customer({"code": "VIP-7", "name": "Free form"})
        masterdata.save_customer({"code": "CUST0042x", "name": "Almost"})

        self.assertEqual(masterdata.save_customer({"name": "Auto"}).code, "CUST1")

    def test_peek_does_not_reserve(self):
        self.assertEqual(peek_next_number(DocumentSequence.Kind.PAYMENT), "PAY1")
        self.assertEqual(peek_next_number(DocumentSequence.Kind.PAYMENT), "PAY1")
        self.assertFalse(DocumentSequence.objects.filter(kind="payment", last_number__gt=0).exists())

    def test_counter_row_is_created_on_first_use(self):
        DocumentSequence.objects.filter(kind="invoice").delete()
        customer = self.make_customer()
        product = self.make_product()

        invoice = self.invoice(customer, product)

        self.assertEqual(invoice.invoice_number, "INV1")
        self.assertEqual(DocumentSequence.objects.get(kind="invoice").prefix, "INV")


class MasterDataTests(LedgerFixtures, TestCase):
    def test_duplicate_code_is_a_conflict(self):
        Customer.objects.create(code="DUP", name="First")
        with self.assertRaises(BillingConflict):
            masterdata.save_customer({"code": "DUP", "name": "Second"})

    def test_referenced_customer_and_product_cannot_be_deleted(self):
        customer = self.make_customer()
        product = self.make_product()
        self.invoice(customer, product)

        with self.assertRaises(BillingConflict) as ctx:
            masterdata.delete_customer(customer)
        self.assertEqual(ctx.exception.code, "in_use")
        with self.assertRaises(BillingConflict):
            masterdata.delete_product(product)

    def test_balance_is_not_writable_through_master_data(self):
        customer = masterdata.save_customer({"name": "Sneaky", "balance": D("999.00")})
        customer.refresh_from_db()
        self.assertEqual(customer.balance, D("0.00"))


class LedgerTransactionTests(TestCase):
    def test_operational_error_becomes_retryable_contention(self):
        with self.assertRaises(ContentionError) as ctx:
            with ledger_transaction("test.contention"):
                raise OperationalError("could not obtain lock")
        self.assertTrue(ctx.exception.retryable)

    def test_integrity_error_becomes_conflict(self):
        with self.assertRaises(BillingConflict):
            with ledger_transaction("test.conflict"):
                raise IntegrityError("duplicate key")

    def test_other_database_errors_are_internal_and_logged(self):
        with self.assertLogs("billing.ledger", level="ERROR"):
            with self.assertRaises(LedgerInternalError):
                with ledger_transaction("test.internal"):
                    raise DatabaseError("disk full")

    def test_failed_operation_rolls_back(self):
        with self.assertRaises(ContentionError):
            with ledger_transaction("test.rollback"):
                Customer.objects.create(code="ROLLBACK", name="Gone")
                raise OperationalError("deadlock detected")
        self.assertFalse(Customer.objects.filter(code="ROLLBACK").exists())


class LockOrderTests(LedgerFixtures, TestCase):
    def test_counter_row_is_locked_before_numbers_are_checked(self):
        manager = Mock()
        with (
            patch.object(QuerySet, "select_for_update", autospec=True, side_effect=QuerySet.select_for_update) as for_update,
            patch("billing.sequences._locked_sequence", wraps=sequences._locked_sequence) as locked,
            patch("billing.sequences._is_taken", wraps=sequences._is_taken) as taken,
        ):
            manager.attach_mock(locked, "lock")
            manager.attach_mock(taken, "check")
            with ledger_transaction("test.issue"):
                sequences.issue_number(DocumentSequence.Kind.INVOICE)

        self.assertEqual([entry[0] for entry in manager.mock_calls][:2], ["lock", "check"])
        self.assertTrue(any(entry.args[0].model is DocumentSequence for entry in for_update.call_args_list))

    def test_payment_locks_customer_before_planning_against_locked_invoices(self):
        customer = self.make_customer()
        self.invoice(customer, self.make_product())
        manager = Mock()
        with (
            patch("billing.payments.lock_customers", wraps=payments.lock_customers) as lock_customers,
            patch("billing.payments.allocate", wraps=payments.allocate) as plan,
            patch("billing.payments.issue_number", wraps=payments.issue_number) as issue,
        ):
            manager.attach_mock(lock_customers, "lock_customers")
            manager.attach_mock(plan, "allocate")
            manager.attach_mock(issue, "issue_number")
            self.pay(customer, "5.00")

        self.assertEqual([entry[0] for entry in manager.mock_calls], ["lock_customers", "allocate", "issue_number"])
        self.assertTrue(plan.call_args.kwargs["lock"])


# Runs on PostgreSQL only, e.g. DATABASE_URL=postgres://... pytest billing/tests.py
@skipUnlessDBFeature("has_select_for_update")
class ConcurrentLedgerTests(LedgerFixtures, TransactionTestCase):
    workers = 8

    def run_concurrently(self, target, workers):
        results = []
        errors = []
        barrier = threading.Barrier(workers)

        def worker():
            try:
                barrier.wait()
                results.append(target())
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results, errors

    def test_concurrent_invoice_creation_issues_distinct_numbers(self):
        customer = self.make_customer()
        product = self.make_product()

        invoices, errors = self.run_concurrently(lambda: self.invoice(customer, product), self.workers)

        self.assertEqual(errors, [])
        self.assertEqual(len({invoice.invoice_number for invoice in invoices}), self.workers)
        self.assertEqual(self.balance(customer), D("10.00") * self.workers)

    def test_concurrent_payments_never_double_allocate(self):
        customer = self.make_customer()
        invoice = self.invoice(customer, self.make_product("100.00"))

        created, errors = self.run_concurrently(lambda: self.pay(customer, "60.00"), 2)

        self.assertEqual(errors, [])
        self.assertEqual(len({payment.payment_number for payment in created}), 2)
        invoice.refresh_from_db()
        self.assertEqual(invoice.paid_amount, D("100.00"))
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(sorted(payment.unallocated_amount for payment in created), [D("0.00"), D("20.00")])
        self.assertEqual(self.balance(customer), D("-20.00"))
        self.assert_ledger_consistent()



class BillingApiTestBase(LedgerFixtures, TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.accountant = user_model.objects.create_user(username="acct", password="pass1234", role="accountant")
        self.admin = user_model.objects.create_user(username="boss", password="pass1234", role="admin")
        self.clerk = user_model.objects.create_user(username="clerk", password="pass1234", role="clerk")
        self.client.force_authenticate(user=self.accountant)
        self.customer = self.make_customer()
        self.product = self.make_product("100.00")

    def invoice_body(self, **overrides):
        body = {
            "customer": str(self.customer.pk),
            "items": [{"product": str(self.product.pk), "quantity": "1"}],
        }
        body.update(overrides)
        return body


class InvoiceApiTests(BillingApiTestBase):
    def test_create_invoice_returns_derived_fields_and_audits(self):
        response = self.client.post(
            "/api/v1/invoices/",
            self.invoice_body(paid_amount="40.00"),
            format="json",
            HTTP_X_REQUEST_ID="inv-req-1",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["invoice_number"], "INV1")
        self.assertEqual(payload["net_amount"], "100.00")
        self.assertEqual(payload["balance_due"], "60.00")
        self.assertEqual(payload["status"], "partial")
        self.assertEqual(payload["allocations"][0]["allocated_amount"], "40.00")
        log = AuditLog.objects.get(action="invoice.create", request_id="inv-req-1")
        self.assertEqual(str(log.entity_id), payload["id"])
        self.assertEqual(log.after_snapshot["status"], "partial")

    def test_validation_errors_use_the_envelope(self):
        response = self.client.post("/api/v1/invoices/", self.invoice_body(items=[]), format="json")

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "items_required")
        self.assertEqual(payload["status"], 400)
        self.assertIn("items", payload["errors"])

    def test_malformed_body_is_a_validation_error(self):
        response = self.client.post("/api/v1/invoices/", self.invoice_body(discount_amount="abc"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("discount_amount", response.json()["errors"])

    def test_unknown_customer_is_not_found(self):
        response = self.client.post("/api/v1/invoices/", self.invoice_body(customer=str(uuid.uuid4())), format="json")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "customer_not_found")

    def test_update_and_delete_invoice(self):
        invoice = self.invoice(self.customer, self.product, quantity="2")
        item = invoice.items.get()

        response = self.client.put(
            f"/api/v1/invoices/{invoice.pk}/",
            self.invoice_body(items=[{"id": str(item.pk), "product": str(self.product.pk), "quantity": "1"}], notes="trimmed"),
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["net_amount"], "100.00")
        self.assertEqual(response.json()["notes"], "trimmed")
        self.assertEqual(self.balance(self.customer), D("100.00"))

        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(f"/api/v1/invoices/{invoice.pk}/")
        self.assertEqual(response.status_code, 204)
        self.assertEqual(self.balance(self.customer), D("0.00"))
        self.assertTrue(AuditLog.objects.filter(action="invoice.delete", entity_id=invoice.pk).exists())

    def test_clerk_cannot_edit_or_delete(self):
        invoice = self.invoice(self.customer, self.product)
        self.client.force_authenticate(user=self.clerk)

        self.assertEqual(self.client.delete(f"/api/v1/invoices/{invoice.pk}/").status_code, 403)
        self.assertEqual(self.client.put(f"/api/v1/invoices/{invoice.pk}/", self.invoice_body(), format="json").status_code, 403)
        self.assertEqual(self.client.post("/api/v1/invoices/", self.invoice_body(), format="json").status_code, 201)

    def test_partial_update_is_not_allowed(self):
        invoice = self.invoice(self.customer, self.product)
        response = self.client.patch(f"/api/v1/invoices/{invoice.pk}/", {"notes": "x"}, format="json")
        self.assertEqual(response.status_code, 405)

    def test_list_filters(self):
        other = self.make_customer(name="Zeta Stores")
        paid = self.invoice(self.customer, self.product, paid="100.00", invoice_date=date(2024, 1, 10))
        pending = self.invoice(self.customer, self.product, invoice_date=date(2024, 2, 10))
        foreign = self.invoice(other, self.product, invoice_date=date(2024, 3, 10))

        def ids(**params):
            response = self.client.get("/api/v1/invoices/", params)
            self.assertEqual(response.status_code, 200)
            return {row["id"] for row in response.json()["results"]}

        self.assertEqual(ids(status="paid"), {str(paid.pk)})
        self.assertEqual(ids(customer=str(other.pk)), {str(foreign.pk)})
        self.assertEqual(ids(q="Zeta"), {str(foreign.pk)})
        self.assertEqual(ids(date_from="2024-02-01", date_to="2024-02-28"), {str(pending.pk)})
        self.assertEqual(self.client.get("/api/v1/invoices/", {"status": "void"}).status_code, 400)
        self.assertEqual(self.client.get("/api/v1/invoices/", {"customer": "nope"}).status_code, 400)

        ordered = self.client.get("/api/v1/invoices/", {"ordering": "invoice_date"}).json()["results"]
        self.assertEqual([row["id"] for row in ordered], [str(paid.pk), str(pending.pk), str(foreign.pk)])


class PaymentApiTests(BillingApiTestBase):
    def test_create_payment_reports_allocations(self):
        invoice = self.invoice(self.customer, self.product)

        response = self.client.post(
            "/api/v1/payments/",
            {"customer": str(self.customer.pk), "amount": "120.00", "payment_date": "2024-05-01"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["payment_number"], "PAY1")
        self.assertEqual(payload["allocations"][0]["invoice_number"], invoice.invoice_number)
        self.assertEqual(payload["allocated_amount"], "100.00")
        self.assertEqual(payload["unallocated_amount"], "20.00")
        self.assertTrue(AuditLog.objects.filter(action="payment.create", entity_id=payload["id"]).exists())

    def test_update_payment(self):
        self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "30.00")

        response = self.client.put(
            f"/api/v1/payments/{payment.pk}/",
            {"customer": str(self.customer.pk), "amount": "50.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["payment_number"], payment.payment_number)
        self.assertEqual(self.balance(self.customer), D("50.00"))

    def test_delete_payment_requires_admin(self):
        self.invoice(self.customer, self.product)
        payment = self.pay(self.customer, "30.00")

        self.assertEqual(self.client.delete(f"/api/v1/payments/{payment.pk}/").status_code, 403)

        self.client.force_authenticate(user=self.admin)
        self.assertEqual(self.client.delete(f"/api/v1/payments/{payment.pk}/").status_code, 204)
        self.assertEqual(self.balance(self.customer), D("100.00"))

    def test_contention_is_retryable_503(self):
        with patch("billing.views.create_payment", side_effect=ContentionError()):
            response = self.client.post(
                "/api/v1/payments/",
                {"customer": str(self.customer.pk), "amount": "10.00"},
                format="json",
            )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response["Retry-After"], "1")
        self.assertEqual(response.json()["code"], "contention")

    @override_settings(BILLING_OVERPAYMENT_POLICY="reject")
    def test_rejected_overpayment_is_400(self):
        response = self.client.post(
            "/api/v1/payments/",
            {"customer": str(self.customer.pk), "amount": "10.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "overpayment")

    def test_next_number_and_allocation_preview(self):
        self.invoice(self.customer, self.product, invoice_date=date(2024, 1, 1))
        self.invoice(self.customer, self.product, invoice_date=date(2024, 1, 2))

        self.assertEqual(self.client.get("/api/v1/payments/next-number/").json(), {"payment_number": "PAY1"})

        response = self.client.get(
            "/api/v1/payments/allocation-preview/", {"customer": str(self.customer.pk), "amount": "150.00"}
        )
        self.assertEqual(response.status_code, 200)
        plan = response.json()
        self.assertEqual([line["invoice_number"] for line in plan["allocations"]], ["INV1", "INV2"])
        self.assertEqual(plan["allocations"][1]["allocated_amount"], "50.00")
        self.assertEqual(plan["unallocated_amount"], "0.00")
        self.assertFalse(Payment.objects.exists())

    def test_list_filters_by_customer_and_text(self):
        other = self.make_customer(name="Other Co")
        self.invoice(self.customer, self.product)
        self.invoice(other, self.product)
        mine = self.pay(self.customer, "10.00")
        theirs = create_payment(PaymentInput(customer_id=other.pk, amount=D("10.00"), notes="wire transfer"))

        by_customer = self.client.get("/api/v1/payments/", {"customer": str(self.customer.pk)}).json()["results"]
        by_text = self.client.get("/api/v1/payments/", {"q": "wire"}).json()["results"]

        self.assertEqual([row["id"] for row in by_customer], [str(mine.pk)])
        self.assertEqual([row["id"] for row in by_text], [str(theirs.pk)])


class MasterDataApiTests(BillingApiTestBase):
    def test_customer_code_is_issued_when_missing(self):
        self.assertEqual(self.client.get("/api/v1/customers/next-code/").json(), {"code": "CUST1"})

        response = self.client.post("/api/v1/customers/", {"name": "New Customer", "balance": "500.00"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["code"], "CUST1")
        self.assertEqual(response.json()["balance"], "0.00")

    def test_duplicate_customer_code_is_409(self):
        response = self.client.post("/api/v1/customers/", {"code": self.customer.code, "name": "Copy"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "duplicate_code")

    def test_referenced_customer_delete_is_409(self):
        self.invoice(self.customer, self.product)
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/customers/{self.customer.pk}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "in_use")

    def test_product_crud_with_numeric_codes(self):
        self.assertEqual(self.client.get("/api/v1/products/next-code/").json(), {"code": "1"})

        created = self.client.post("/api/v1/products/", {"name": "Bolt", "price": "2.50"}, format="json")
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["code"], "1")

        updated = self.client.patch(f"/api/v1/products/{created.json()['id']}/", {"price": "3.00"}, format="json")
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["price"], "3.00")
        self.assertTrue(AuditLog.objects.filter(action="product.update").exists())

    def test_customer_search(self):
        self.make_customer(name="Nile Traders")
        response = self.client.get("/api/v1/customers/", {"q": "nile"})
        self.assertEqual([row["name"] for row in response.json()["results"]], ["Nile Traders"])


class CustomerStatementApiTests(BillingApiTestBase):
    def setUp(self):
        super().setUp()
        self.invoice(self.customer, self.product, invoice_date=date(2024, 1, 1))
        self.pay(self.customer, "40.00", payment_date=date(2024, 1, 5))
        self.invoice(self.customer, self.product, unit_price="50.00", invoice_date=date(2024, 2, 1))

    def test_statement_has_opening_balance_and_running_rows(self):
        response = self.client.get(f"/api/v1/customers/{self.customer.pk}/statement/", {"date_from": "2024-01-03"})

        self.assertEqual(response.status_code, 200)
        statement = response.json()
        self.assertEqual(statement["opening_balance"], "100.00")
        self.assertEqual([row["type"] for row in statement["rows"]], ["payment", "invoice"])
        self.assertEqual([row["balance"] for row in statement["rows"]], ["60.00", "110.00"])
        self.assertEqual(statement["closing_balance"], "110.00")
        self.assertEqual(statement["current_balance"], "110.00")

    def test_statement_csv_export(self):
        response = self.client.get(f"/api/v1/customers/{self.customer.pk}/statement/", {"export": "csv"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        lines = response.content.decode().strip().splitlines()
        self.assertEqual(lines[0], "date,type,document_number,description,debit,credit,balance")
        self.assertEqual(len(lines), 5)
        self.assertTrue(lines[-1].endswith(",110.00"))

    def test_statement_requires_reports_capability(self):
        self.client.force_authenticate(user=self.clerk)
        response = self.client.get(f"/api/v1/customers/{self.customer.pk}/statement/")
        self.assertEqual(response.status_code, 403)

    def test_statement_rejects_inverted_range(self):
        response = self.client.get(
            f"/api/v1/customers/{self.customer.pk}/statement/", {"date_from": "2024-03-01", "date_to": "2024-01-01"}
        )
        self.assertEqual(response.status_code, 400)
