import csv
from decimal import Decimal

from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.http import HttpResponse
from django.utils.dateparse import parse_date
from rest_framework.exceptions import ValidationError

from billing.models import Invoice, Payment
from billing.records import ZERO

STATEMENT_FIELDS = ["date", "type", "document_number", "description", "debit", "credit", "balance"]


def _sum(qs, field):
    return qs.aggregate(total=Coalesce(Sum(field), ZERO))["total"]


def parse_date_range(params):
    date_from = params.get("date_from")
    date_to = params.get("date_to")
    parsed_from = parse_date(date_from) if date_from else None
    parsed_to = parse_date(date_to) if date_to else None
    if date_from and parsed_from is None:
        raise ValidationError({"date_from": "Use the YYYY-MM-DD format."})
    if date_to and parsed_to is None:
        raise ValidationError({"date_to": "Use the YYYY-MM-DD format."})
    if parsed_from and parsed_to and parsed_from > parsed_to:
        raise ValidationError({"date_range": "date_from must be before or equal to date_to."})
    return parsed_from, parsed_to


def customer_statement(customer, date_from=None, date_to=None):
    """
    Chronological ledger of a customer's invoices (debit) and payments (credit).

    The opening balance covers everything dated before ``date_from``. Invoices
    come before payments on the same day.
    """
    invoices = Invoice.objects.filter(customer=customer)
    payments = Payment.objects.filter(customer=customer)

    opening = ZERO
    if date_from:
        opening = _sum(invoices.filter(invoice_date__lt=date_from), "net_amount") - _sum(
            payments.filter(payment_date__lt=date_from), "amount"
        )
        invoices = invoices.filter(invoice_date__gte=date_from)
        payments = payments.filter(payment_date__gte=date_from)
    if date_to:
        invoices = invoices.filter(invoice_date__lte=date_to)
        payments = payments.filter(payment_date__lte=date_to)

    entries = []
    for invoice in invoices.order_by("invoice_date", "sequence_no"):
        entries.append(
            (
                (invoice.invoice_date, 0, invoice.sequence_no),
                {
                    "date": invoice.invoice_date,
                    "type": "invoice",
                    "document_number": invoice.invoice_number,
                    "description": invoice.notes,
                    "debit": invoice.net_amount,
                    "credit": ZERO,
                },
            )
        )
    for payment in payments.order_by("payment_date", "sequence_no"):
        entries.append(
            (
                (payment.payment_date, 1, payment.sequence_no),
                {
                    "date": payment.payment_date,
                    "type": "payment",
                    "document_number": payment.payment_number,
                    "description": payment.notes,
                    "debit": ZERO,
                    "credit": payment.amount,
                },
            )
        )
    entries.sort(key=lambda entry: entry[0])

    running = opening
    rows = []
    total_debit = ZERO
    total_credit = ZERO
    for _, row in entries:
        running = running + row["debit"] - row["credit"]
        total_debit += row["debit"]
        total_credit += row["credit"]
        rows.append({**row, "balance": running})

    return {
        "customer_id": customer.pk,
        "customer_code": customer.code,
        "customer_name": customer.name,
        "date_from": date_from,
        "date_to": date_to,
        "opening_balance": opening,
        "total_debit": total_debit,
        "total_credit": total_credit,
        "closing_balance": running,
        "current_balance": Decimal(customer.balance),
        "rows": rows,
    }


def statement_csv_response(statement):
    response = HttpResponse(content_type="text/csv")
    response["Content-Disposition"] = f'attachment; filename="statement-{statement["customer_code"]}.csv"'

    writer = csv.DictWriter(response, fieldnames=STATEMENT_FIELDS)
    writer.writeheader()
    writer.writerow(
        {"date": statement["date_from"] or "", "type": "opening", "balance": statement["opening_balance"]}
    )
    for row in statement["rows"]:
        writer.writerow({**row, "date": row["date"].isoformat()})
    return response
