from django.db.models import Sum
from rest_framework import serializers

from billing.models import Customer, Invoice, InvoiceItem, Payment, PaymentAllocation, Product
from billing.records import ZERO, InvoiceInput, InvoiceItemInput, InvoiceUpdateInput, PaymentInput


def _money_field(**kwargs):
    return serializers.DecimalField(max_digits=12, decimal_places=2, **kwargs)


class CustomerSerializer(serializers.ModelSerializer):
    # Duplicate codes are reported as conflicts by the ledger, not as field errors.
    code = serializers.CharField(max_length=32, required=False, allow_blank=True)

    class Meta:
        model = Customer
        fields = ["id", "code", "name", "contact_person", "phone", "address", "balance", "created_at", "updated_at"]
        read_only_fields = ["id", "balance", "created_at", "updated_at"]


class ProductSerializer(serializers.ModelSerializer):
    code = serializers.CharField(max_length=32, required=False, allow_blank=True)
    price = _money_field(min_value=ZERO)

    class Meta:
        model = Product
        fields = ["id", "code", "name", "unit", "price", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class InvoiceItemSerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = InvoiceItem
        fields = ["id", "product", "product_code", "product_name", "position", "quantity", "unit_price", "total"]
        read_only_fields = fields


class InvoiceAllocationSerializer(serializers.ModelSerializer):
    payment_number = serializers.CharField(source="payment.payment_number", read_only=True)
    payment_date = serializers.DateField(source="payment.payment_date", read_only=True)

    class Meta:
        model = PaymentAllocation
        fields = ["id", "payment", "payment_number", "payment_date", "allocated_amount"]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    customer_code = serializers.CharField(source="customer.code", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    items = InvoiceItemSerializer(many=True, read_only=True)
    allocations = InvoiceAllocationSerializer(many=True, read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_code",
            "customer_name",
            "invoice_date",
            "notes",
            "total_amount",
            "discount_amount",
            "net_amount",
            "paid_amount",
            "balance_due",
            "status",
            "items",
            "allocations",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InvoiceItemInputSerializer(serializers.Serializer):
    id = serializers.UUIDField(required=False, allow_null=True)
    product = serializers.UUIDField()
    quantity = _money_field()
    unit_price = _money_field(required=False, allow_null=True)


class InvoiceWriteSerializer(serializers.Serializer):
    """Validates invoice request bodies into ledger input records; business rules live in the ledger."""

    customer = serializers.UUIDField(required=False, allow_null=True)
    items = InvoiceItemInputSerializer(many=True, allow_empty=True)
    discount_amount = _money_field(required=False, default=ZERO)
    paid_amount = _money_field(required=False, allow_null=True)
    invoice_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def _items(self):
        return tuple(
            InvoiceItemInput(
                product_id=item["product"],
                quantity=item["quantity"],
                unit_price=item.get("unit_price"),
                item_id=item.get("id"),
            )
            for item in self.validated_data["items"]
        )

    def to_create_record(self):
        data = self.validated_data
        return InvoiceInput(
            customer_id=data.get("customer"),
            items=self._items(),
            discount_amount=data["discount_amount"],
            paid_amount=data.get("paid_amount") or ZERO,
            invoice_date=data.get("invoice_date"),
            notes=data.get("notes") or "",
        )

    def to_update_record(self):
        data = self.validated_data
        return InvoiceUpdateInput(
            items=self._items(),
            customer_id=data.get("customer"),
            discount_amount=data["discount_amount"],
            paid_amount=data.get("paid_amount"),
            invoice_date=data.get("invoice_date"),
            notes=data.get("notes"),
        )


class PaymentAllocationSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source="invoice.invoice_number", read_only=True)
    invoice_date = serializers.DateField(source="invoice.invoice_date", read_only=True)

    class Meta:
        model = PaymentAllocation
        fields = ["id", "invoice", "invoice_number", "invoice_date", "allocated_amount"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    customer_code = serializers.CharField(source="customer.code", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    allocations = PaymentAllocationSerializer(many=True, read_only=True)
    allocated_amount = serializers.SerializerMethodField()
    unallocated_amount = serializers.SerializerMethodField()

    class Meta:
        model = Payment
        fields = [
            "id",
            "payment_number",
            "customer",
            "customer_code",
            "customer_name",
            "amount",
            "payment_date",
            "notes",
            "allocations",
            "allocated_amount",
            "unallocated_amount",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def _allocated(self, obj):
        return obj.allocations.aggregate(total=Sum("allocated_amount"))["total"] or ZERO

    def get_allocated_amount(self, obj):
        return str(self._allocated(obj))

    def get_unallocated_amount(self, obj):
        return str(obj.amount - self._allocated(obj))


class PaymentWriteSerializer(serializers.Serializer):
    customer = serializers.UUIDField()
    amount = _money_field()
    payment_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def to_record(self):
        data = self.validated_data
        return PaymentInput(
            customer_id=data["customer"],
            amount=data["amount"],
            payment_date=data.get("payment_date"),
            notes=data.get("notes"),
        )


class AllocationPreviewRequestSerializer(serializers.Serializer):
    customer = serializers.UUIDField()
    amount = _money_field()


class AllocationLineSerializer(serializers.Serializer):
    invoice_id = serializers.UUIDField()
    invoice_number = serializers.CharField(source="invoice.invoice_number")
    invoice_date = serializers.DateField(source="invoice.invoice_date")
    balance_due = _money_field()
    allocated_amount = _money_field()
    remaining_balance = _money_field()


class AllocationPlanSerializer(serializers.Serializer):
    amount = _money_field()
    allocations = AllocationLineSerializer(many=True)
    allocated_amount = _money_field()
    unallocated_amount = _money_field()


class StatementRowSerializer(serializers.Serializer):
    date = serializers.DateField()
    type = serializers.CharField()
    document_number = serializers.CharField()
    description = serializers.CharField(allow_blank=True)
    debit = _money_field()
    credit = _money_field()
    balance = serializers.DecimalField(max_digits=14, decimal_places=2)


class CustomerStatementSerializer(serializers.Serializer):
    customer_id = serializers.UUIDField()
    customer_code = serializers.CharField()
    customer_name = serializers.CharField()
    date_from = serializers.DateField(allow_null=True)
    date_to = serializers.DateField(allow_null=True)
    opening_balance = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_debit = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_credit = serializers.DecimalField(max_digits=14, decimal_places=2)
    closing_balance = serializers.DecimalField(max_digits=14, decimal_places=2)
    current_balance = serializers.DecimalField(max_digits=14, decimal_places=2)
    rows = StatementRowSerializer(many=True)
