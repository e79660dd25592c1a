import uuid
from decimal import Decimal

from django.db import models

ZERO = Decimal("0.00")


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    name = models.CharField(max_length=255)
    contact_person = models.CharField(max_length=255, blank=True, default="")
    phone = models.CharField(max_length=64, null=True, blank=True)
    address = models.TextField(blank=True, default="")
    # Positive means the customer owes money; only the ledgers write it.
    balance = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["name"], name="customer_name_idx"),
            models.Index(fields=["phone"], name="customer_phone_idx"),
        ]

    def __str__(self):
        return f"{self.code} {self.name}"


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    name = models.CharField(max_length=255)
    unit = models.CharField(max_length=32, default="piece")
    price = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        constraints = [
            models.CheckConstraint(condition=models.Q(price__gte=0), name="ck_product_price_nonneg"),
        ]

    def __str__(self):
        return f"{self.code} {self.name}"


class DocumentSequence(models.Model):
    class Kind(models.TextChoices):
        INVOICE = "invoice", "Invoice"
        PAYMENT = "payment", "Payment"
        CUSTOMER = "customer", "Customer"
        PRODUCT = "product", "Product"

    kind = models.CharField(max_length=16, choices=Kind.choices, unique=True)
    prefix = models.CharField(max_length=16, blank=True, default="")
    last_number = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def format_number(self, number):
        return f"{self.prefix}{number}"

    def __str__(self):
        return f"{self.kind} sequence at {self.last_number}"


def derive_invoice_status(balance_due, paid_amount):
    if balance_due <= 0:
        return Invoice.Status.PAID
    if paid_amount > 0:
        return Invoice.Status.PARTIAL
    return Invoice.Status.PENDING


class Invoice(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PARTIAL = "partial", "Partial"
        PAID = "paid", "Paid"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=64, unique=True)
    sequence_no = models.PositiveIntegerField(unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="invoices")
    invoice_date = models.DateField()
    notes = models.TextField(blank=True, default="")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    net_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    balance_due = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-invoice_date", "-sequence_no"]
        indexes = [
            models.Index(fields=["customer", "status", "invoice_date"], name="invoice_customer_status_idx"),
            models.Index(fields=["invoice_date"], name="invoice_date_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(paid_amount__gte=0), name="ck_invoice_paid_nonneg"),
            models.CheckConstraint(condition=models.Q(balance_due__gte=0), name="ck_invoice_balance_nonneg"),
            models.CheckConstraint(condition=models.Q(discount_amount__gte=0), name="ck_invoice_discount_nonneg"),
        ]

    def __str__(self):
        return self.invoice_number

    def recalculate(self):
        """Re-derive net amount, balance due and status from the stored amounts."""
        self.net_amount = max(self.total_amount - self.discount_amount, ZERO)
        self.balance_due = max(self.net_amount - self.paid_amount, ZERO)
        self.status = derive_invoice_status(self.balance_due, self.paid_amount)


class InvoiceItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="invoice_items")
    position = models.PositiveIntegerField(default=0)
    quantity = models.DecimalField(max_digits=12, decimal_places=2)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ["position"]
        indexes = [
            models.Index(fields=["invoice", "position"], name="invoice_item_position_idx"),
            models.Index(fields=["product"], name="invoice_item_product_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="ck_invoice_item_qty_pos"),
            models.CheckConstraint(condition=models.Q(unit_price__gt=0), name="ck_invoice_item_price_pos"),
        ]


class Payment(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment_number = models.CharField(max_length=64, unique=True)
    sequence_no = models.PositiveIntegerField(unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_date = models.DateField()
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-payment_date", "-sequence_no"]
        indexes = [
            models.Index(fields=["customer", "payment_date"], name="payment_customer_date_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(amount__gt=0), name="ck_payment_amount_pos"),
        ]

    def __str__(self):
        return self.payment_number


class PaymentAllocation(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name="allocations")
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="allocations")
    allocated_amount = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["invoice"], name="allocation_invoice_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["payment", "invoice"], name="uniq_allocation_payment_invoice"),
            models.CheckConstraint(condition=models.Q(allocated_amount__gt=0), name="ck_allocation_amount_pos"),
        ]
