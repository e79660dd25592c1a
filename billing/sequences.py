"""
Document number issuing for invoices, payments, customers and products.

Numbers come from a single counter row per kind, locked with
``select_for_update`` inside the caller's transaction. A number that is
already present in the numbered table (imported legacy data, manual codes)
makes the counter jump past the highest number in use; the attempt is
retried up to ``BILLING_SEQUENCE_MAX_RETRIES`` times.
"""

import logging
import re
from dataclasses import dataclass

from django.conf import settings
from django.db.models import Max, Q

from billing.exceptions import SequenceExhausted
from billing.models import Customer, DocumentSequence, Invoice, Payment, Product

logger = logging.getLogger("billing.ledger")

DEFAULT_PREFIXES = {
    DocumentSequence.Kind.INVOICE: "INV",
    DocumentSequence.Kind.PAYMENT: "PAY",
    DocumentSequence.Kind.CUSTOMER: "CUST",
    DocumentSequence.Kind.PRODUCT: "",
}

# kind -> (model, number field, sequence_no field or None)
NUMBERED_FIELDS = {
    DocumentSequence.Kind.INVOICE: (Invoice, "invoice_number", "sequence_no"),
    DocumentSequence.Kind.PAYMENT: (Payment, "payment_number", "sequence_no"),
    DocumentSequence.Kind.CUSTOMER: (Customer, "code", None),
    DocumentSequence.Kind.PRODUCT: (Product, "code", None),
}


@dataclass(frozen=True)
class IssuedNumber:
    sequence_no: int
    number: str

    def __str__(self):
        return self.number


def _is_taken(kind, number, sequence_no):
    model, number_field, sequence_field = NUMBERED_FIELDS[kind]
    query = Q(**{number_field: number})
    if sequence_field:
        query |= Q(**{sequence_field: sequence_no})
    return model.objects.filter(query).exists()


def _parse_number(prefix, number):
    """Return the counter value of ``number`` when it has the sequence format, else ``None``."""
    number = (number or "").strip()
    if not number.startswith(prefix):
        return None
    digits = number[len(prefix):]
    if not re.fullmatch(r"[0-9]+", digits):
        return None
    return int(digits)


def _highest_taken(kind, prefix):
    """Largest counter value already used by a record of ``kind``."""
    model, number_field, sequence_field = NUMBERED_FIELDS[kind]
    pattern = rf"^{re.escape(prefix)}[0-9]+$"
    numbers = model.objects.filter(**{f"{number_field}__regex": pattern}).values_list(number_field, flat=True)
    highest = max((_parse_number(prefix, number) for number in numbers), default=0)
    if sequence_field:
        highest = max(highest, model.objects.aggregate(top=Max(sequence_field))["top"] or 0)
    return highest


def _locked_sequence(kind):
    sequence, _ = DocumentSequence.objects.select_for_update().get_or_create(
        kind=kind,
        defaults={"prefix": DEFAULT_PREFIXES[kind]},
    )
    return sequence


def issue_number(kind):
    """Reserve the next free number of ``kind``. Must run inside a transaction."""
    kind = DocumentSequence.Kind(kind)
    sequence = _locked_sequence(kind)
    max_retries = settings.BILLING_SEQUENCE_MAX_RETRIES

    for attempt in range(1, max_retries + 1):
        sequence.last_number += 1
        candidate = sequence.format_number(sequence.last_number)
        if not _is_taken(kind, candidate, sequence.last_number):
            sequence.save(update_fields=["last_number", "updated_at"])
            return IssuedNumber(sequence_no=sequence.last_number, number=candidate)

        logger.warning(
            "sequence_collision kind=%s attempt=%s",
            kind,
            attempt,
            extra={"operation": "sequence.issue", "document_number": candidate},
        )
        # Jump past every number already in use.
        sequence.last_number = max(sequence.last_number, _highest_taken(kind, sequence.prefix))

    logger.warning(
        "sequence_exhausted kind=%s retries=%s",
        kind,
        max_retries,
        extra={"operation": "sequence.issue", "error_code": SequenceExhausted.default_code},
    )
    raise SequenceExhausted()


def next_number(kind):
    return issue_number(kind).number


def note_used_number(kind, number):
    """
    Advance the counter past a number the caller supplied explicitly.

    Numbers that do not have the sequence format leave the counter alone.
    Must run inside a transaction.
    """
    kind = DocumentSequence.Kind(kind)
    sequence = _locked_sequence(kind)
    value = _parse_number(sequence.prefix, number)
    if value is None or sequence.format_number(value) != number:
        return
    if value > sequence.last_number:
        sequence.last_number = value
        sequence.save(update_fields=["last_number", "updated_at"])


def peek_next_number(kind):
    """Preview the number the next ``issue_number`` call would return. Never returns a number in use."""
    kind = DocumentSequence.Kind(kind)
    sequence = DocumentSequence.objects.filter(kind=kind).first()
    if sequence is None:
        sequence = DocumentSequence(kind=kind, prefix=DEFAULT_PREFIXES[kind])

    candidate_no = sequence.last_number + 1
    if _is_taken(kind, sequence.format_number(candidate_no), candidate_no):
        candidate_no = max(candidate_no, _highest_taken(kind, sequence.prefix) + 1)
    return sequence.format_number(candidate_no)
