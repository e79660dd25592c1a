import uuid
from decimal import Decimal

import django.db.models.deletion
from django.db import migrations, models

SEQUENCE_PREFIXES = {"invoice": "INV", "payment": "PAY", "customer": "CUST", "product": ""}


def seed_sequences(apps, schema_editor):
    DocumentSequence = apps.get_model("billing", "DocumentSequence")
    for kind, prefix in SEQUENCE_PREFIXES.items():
        DocumentSequence.objects.get_or_create(kind=kind, defaults={"prefix": prefix})


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=32, unique=True)),
                ("name", models.CharField(max_length=255)),
                ("contact_person", models.CharField(blank=True, default="", max_length=255)),
                ("phone", models.CharField(blank=True, max_length=64, null=True)),
                ("address", models.TextField(blank=True, default="")),
                ("balance", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=14)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["name"], name="customer_name_idx"),
                    models.Index(fields=["phone"], name="customer_phone_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=32, unique=True)),
                ("name", models.CharField(max_length=255)),
                ("unit", models.CharField(default="piece", max_length=32)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("price__gte", 0)), name="ck_product_price_nonneg"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DocumentSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("invoice", "Invoice"),
                            ("payment", "Payment"),
                            ("customer", "Customer"),
                            ("product", "Product"),
                        ],
                        max_length=16,
                        unique=True,
                    ),
                ),
                ("prefix", models.CharField(blank=True, default="", max_length=16)),
                ("last_number", models.PositiveIntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("invoice_number", models.CharField(max_length=64, unique=True)),
                ("sequence_no", models.PositiveIntegerField(unique=True)),
                ("invoice_date", models.DateField()),
                ("notes", models.TextField(blank=True, default="")),
                ("total_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("net_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("paid_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("balance_due", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("partial", "Partial"), ("paid", "Paid")],
                        default="pending",
                        editable=False,
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.customer",
                    ),
                ),
            ],
            options={
                "ordering": ["-invoice_date", "-sequence_no"],
                "indexes": [
                    models.Index(fields=["customer", "status", "invoice_date"], name="invoice_customer_status_idx"),
                    models.Index(fields=["invoice_date"], name="invoice_date_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("paid_amount__gte", 0)), name="ck_invoice_paid_nonneg"),
                    models.CheckConstraint(condition=models.Q(("balance_due__gte", 0)), name="ck_invoice_balance_nonneg"),
                    models.CheckConstraint(
                        condition=models.Q(("discount_amount__gte", 0)), name="ck_invoice_discount_nonneg"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("position", models.PositiveIntegerField(default=0)),
                ("quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("total", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="billing.invoice",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoice_items",
                        to="billing.product",
                    ),
                ),
            ],
            options={
                "ordering": ["position"],
                "indexes": [
                    models.Index(fields=["invoice", "position"], name="invoice_item_position_idx"),
                    models.Index(fields=["product"], name="invoice_item_product_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gt", 0)), name="ck_invoice_item_qty_pos"),
                    models.CheckConstraint(condition=models.Q(("unit_price__gt", 0)), name="ck_invoice_item_price_pos"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("payment_number", models.CharField(max_length=64, unique=True)),
                ("sequence_no", models.PositiveIntegerField(unique=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("payment_date", models.DateField()),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.customer",
                    ),
                ),
            ],
            options={
                "ordering": ["-payment_date", "-sequence_no"],
                "indexes": [
                    models.Index(fields=["customer", "payment_date"], name="payment_customer_date_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="ck_payment_amount_pos"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentAllocation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("allocated_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="billing.invoice",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="allocations",
                        to="billing.payment",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["invoice"], name="allocation_invoice_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("payment", "invoice"), name="uniq_allocation_payment_invoice"),
                    models.CheckConstraint(
                        condition=models.Q(("allocated_amount__gt", 0)), name="ck_allocation_amount_pos"
                    ),
                ],
            },
        ),
        migrations.RunPython(seed_sequences, migrations.RunPython.noop),
    ]
