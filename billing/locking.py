"""
Transaction and row-lock helpers shared by the invoice and payment ledgers.

Every ledger operation runs inside ``ledger_transaction()``. Rows are locked
in a fixed order to avoid deadlocks between concurrent operations:
customers (ascending primary key), then the document sequence, then the
invoice/payment rows being changed.
"""

import logging
import uuid
from contextlib import contextmanager

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.db.models import F
from django.utils import timezone

from billing.exceptions import BillingConflict, BillingError, BillingNotFound, ContentionError, LedgerInternalError
from billing.models import Customer, Invoice, Payment

logger = logging.getLogger("billing.ledger")


def _apply_lock_timeout():
    connection = transaction.get_connection()
    if connection.vendor != "postgresql":
        return
    timeout_ms = int(settings.BILLING_LOCK_TIMEOUT_MS)
    with connection.cursor() as cursor:
        cursor.execute(f"SET LOCAL lock_timeout = {timeout_ms}")


@contextmanager
def ledger_transaction(operation):
    """Run the block atomically and translate store failures into billing errors."""
    try:
        with transaction.atomic():
            _apply_lock_timeout()
            yield
    except BillingError:
        raise
    except IntegrityError as exc:
        logger.warning("ledger_integrity_conflict", extra={"operation": operation, "error_code": "conflict"})
        raise BillingConflict("The change conflicts with existing records.") from exc
    except OperationalError as exc:
        logger.warning("ledger_contention", extra={"operation": operation, "error_code": "contention"})
        raise ContentionError() from exc
    except DatabaseError as exc:
        logger.exception("ledger_database_error", extra={"operation": operation, "error_code": "internal_error"})
        raise LedgerInternalError() from exc


def _not_found(entity, field_name):
    return BillingNotFound(f"{entity} was not found.", code=f"{entity.lower()}_not_found", field=field_name)


def lock_customers(*customer_ids):
    """Lock the given customer rows and return them keyed by primary key."""
    try:
        wanted = {uuid.UUID(str(customer_id)) for customer_id in customer_ids if customer_id is not None}
    except ValueError:
        raise _not_found("Customer", "customer")

    customers = list(Customer.objects.select_for_update().filter(pk__in=wanted).order_by("pk"))
    locked = {customer.pk: customer for customer in customers}
    if set(locked) != wanted:
        raise _not_found("Customer", "customer")
    return locked


def _owner_customer_id(model, record_id, entity):
    try:
        customer_id = model.objects.filter(pk=record_id).values_list("customer_id", flat=True).first()
    except (DjangoValidationError, ValueError):
        customer_id = None
    if customer_id is None:
        raise _not_found(entity, "id")
    return customer_id


def _lock_owned(model, record_id, entity, extra_customer_ids):
    customer_id = _owner_customer_id(model, record_id, entity)
    customers = lock_customers(customer_id, *extra_customer_ids)
    record = model.objects.select_for_update().filter(pk=record_id).first()
    if record is None:
        raise _not_found(entity, "id")
    if record.customer_id != customer_id:
        # Re-assigned by a concurrent transaction between the read and the lock.
        raise ContentionError(f"{entity} changed while waiting for its lock, please retry.")
    return record, customers


def lock_invoice(invoice_id, extra_customer_ids=()):
    return _lock_owned(Invoice, invoice_id, "Invoice", extra_customer_ids)


def lock_payment(payment_id, extra_customer_ids=()):
    return _lock_owned(Payment, payment_id, "Payment", extra_customer_ids)


def adjust_customer_balance(customer_id, delta):
    if not delta:
        return
    Customer.objects.filter(pk=customer_id).update(balance=F("balance") + delta, updated_at=timezone.now())
