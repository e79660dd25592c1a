import logging

from django.db.models import ProtectedError

from billing.exceptions import BillingConflict
from billing.locking import ledger_transaction
from billing.models import Customer, DocumentSequence, Product
from billing.sequences import issue_number, note_used_number

logger = logging.getLogger("billing.ledger")


def _ensure_code_free(model, code, exclude_pk=None):
    qs = model.objects.filter(code=code)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    if qs.exists():
        raise BillingConflict(f"Code {code} is already in use.", code="duplicate_code", field="code")


def _save_with_code(model, kind, fields, instance=None):
    operation = f"{model._meta.model_name}.{'update' if instance else 'create'}"
    with ledger_transaction(operation):
        code = (fields.pop("code", None) or "").strip()
        if instance is None:
            if code:
                _ensure_code_free(model, code)
                note_used_number(kind, code)
            else:
                code = issue_number(kind).number
            instance = model.objects.create(code=code, **fields)
        else:
            if code and code != instance.code:
                _ensure_code_free(model, code, exclude_pk=instance.pk)
                note_used_number(kind, code)
                instance.code = code
            for name, value in fields.items():
                setattr(instance, name, value)
            instance.save()

    logger.info(operation, extra={"operation": operation, "entity": model._meta.model_name, "entity_id": instance.pk})
    return instance


def save_customer(fields, instance=None):
    # Balance is owned by the ledgers.
    fields = {name: value for name, value in fields.items() if name != "balance"}
    return _save_with_code(Customer, DocumentSequence.Kind.CUSTOMER, fields, instance=instance)


def save_product(fields, instance=None):
    return _save_with_code(Product, DocumentSequence.Kind.PRODUCT, dict(fields), instance=instance)


def _delete_referenced(instance, message):
    operation = f"{instance._meta.model_name}.delete"
    entity_id = instance.pk
    with ledger_transaction(operation):
        try:
            instance.delete()
        except ProtectedError as exc:
            raise BillingConflict(message, code="in_use") from exc
    logger.info(operation, extra={"operation": operation, "entity": instance._meta.model_name, "entity_id": entity_id})


def delete_customer(customer):
    _delete_referenced(customer, "Customer has invoices or payments and cannot be deleted.")


def delete_product(product):
    _delete_referenced(product, "Product is used on invoices and cannot be deleted.")
