import uuid

from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from billing import masterdata
from billing.allocation import allocate
from billing.invoices import create_invoice, delete_invoice, update_invoice
from billing.locking import ledger_transaction
from billing.models import Customer, DocumentSequence, Invoice, Payment, Product
from billing.payments import create_payment, delete_payment, update_payment
from billing.reports import customer_statement, parse_date_range, statement_csv_response
from billing.sequences import peek_next_number
from billing.serializers import (
    AllocationPlanSerializer,
    AllocationPreviewRequestSerializer,
    CustomerSerializer,
    CustomerStatementSerializer,
    InvoiceSerializer,
    InvoiceWriteSerializer,
    PaymentSerializer,
    PaymentWriteSerializer,
    ProductSerializer,
)
from common.audit import AuditedMutationMixin
from common.permissions import RoleCapabilityPermission


def _uuid_param(params, name):
    value = params.get(name)
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError({name: "Must be a valid UUID."})


class MasterDataViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    sequence_kind = None
    search_fields = ("code", "name")
    save_record = None
    delete_record = None

    def get_queryset(self):
        qs = super().get_queryset()
        query = self.request.query_params.get("q")
        if query:
            condition = Q()
            for field_name in self.search_fields:
                condition |= Q(**{f"{field_name}__icontains": query})
            qs = qs.filter(condition)
        return qs

    def perform_create(self, serializer):
        with ledger_transaction(f"{self.audit_entity}.create"):
            instance = self.save_record(dict(serializer.validated_data))
            serializer.instance = instance
            self._audit(action="create", entity_id=instance.pk, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        with ledger_transaction(f"{self.audit_entity}.update"):
            before_snapshot = self.get_serializer(serializer.instance).data
            instance = self.save_record(dict(serializer.validated_data), instance=serializer.instance)
            serializer.instance = instance
            self._audit(
                action="update",
                entity_id=instance.pk,
                before_snapshot=before_snapshot,
                after_snapshot=self.get_serializer(instance).data,
            )

    def perform_destroy(self, instance):
        with ledger_transaction(f"{self.audit_entity}.delete"):
            entity_id = instance.pk
            before_snapshot = self.get_serializer(instance).data
            self.delete_record(instance)
            self._audit(action="delete", entity_id=entity_id, before_snapshot=before_snapshot)

    @action(detail=False, methods=["get"], url_path="next-code")
    def next_code(self, request):
        return Response({"code": peek_next_number(self.sequence_kind)})


class CustomerViewSet(MasterDataViewSet):
    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
    permission_action_map = {
        "list": "billing.view",
        "retrieve": "billing.view",
        "next_code": "billing.view",
        "create": "masterdata.manage",
        "update": "masterdata.manage",
        "partial_update": "masterdata.manage",
        "destroy": "billing.delete",
        "statement": "reports.view",
    }
    audit_entity = "customer"
    sequence_kind = DocumentSequence.Kind.CUSTOMER
    search_fields = ("code", "name", "phone", "contact_person")
    save_record = staticmethod(masterdata.save_customer)
    delete_record = staticmethod(masterdata.delete_customer)

    @action(detail=True, methods=["get"], url_path="statement")
    def statement(self, request, pk=None):
        customer = self.get_object()
        date_from, date_to = parse_date_range(request.query_params)
        statement = customer_statement(customer, date_from=date_from, date_to=date_to)
        if request.query_params.get("export") == "csv":
            return statement_csv_response(statement)
        return Response(CustomerStatementSerializer(statement).data)


class ProductViewSet(MasterDataViewSet):
    queryset = Product.objects.all()
    serializer_class = ProductSerializer
    permission_action_map = {
        "list": "billing.view",
        "retrieve": "billing.view",
        "next_code": "billing.view",
        "create": "masterdata.manage",
        "update": "masterdata.manage",
        "partial_update": "masterdata.manage",
        "destroy": "billing.delete",
    }
    audit_entity = "product"
    sequence_kind = DocumentSequence.Kind.PRODUCT
    save_record = staticmethod(masterdata.save_product)
    delete_record = staticmethod(masterdata.delete_product)


class InvoiceViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Invoice.objects.select_related("customer").prefetch_related("items__product", "allocations__payment")
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "billing.view",
        "retrieve": "billing.view",
        "next_number": "billing.view",
        "create": "billing.create",
        "update": "billing.edit",
        "destroy": "billing.delete",
    }
    http_method_names = ["get", "post", "put", "delete", "head", "options"]
    audit_entity = "invoice"
    ordering_fields = {"invoice_date", "invoice_number", "net_amount", "balance_due", "created_at"}

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params

        customer_id = _uuid_param(params, "customer")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        status_filter = params.get("status")
        if status_filter:
            if status_filter not in Invoice.Status.values:
                raise ValidationError({"status": f"Must be one of {', '.join(Invoice.Status.values)}."})
            qs = qs.filter(status=status_filter)
        query = params.get("q")
        if query:
            qs = qs.filter(
                Q(invoice_number__icontains=query)
                | Q(customer__name__icontains=query)
                | Q(customer__code__icontains=query)
                | Q(notes__icontains=query)
            )
        date_from, date_to = parse_date_range(params)
        if date_from:
            qs = qs.filter(invoice_date__gte=date_from)
        if date_to:
            qs = qs.filter(invoice_date__lte=date_to)

        ordering = params.get("ordering")
        if ordering:
            if ordering.lstrip("-") not in self.ordering_fields:
                raise ValidationError({"ordering": "Unsupported ordering field."})
            qs = qs.order_by(ordering, "-sequence_no")
        return qs

    def _snapshot(self, invoice_id):
        return InvoiceSerializer(Invoice.objects.get(pk=invoice_id)).data

    def create(self, request, *args, **kwargs):
        serializer = InvoiceWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        with ledger_transaction("invoice.create"):
            invoice = create_invoice(serializer.to_create_record())
            after_snapshot = self._snapshot(invoice.pk)
            self._audit(action="create", entity_id=invoice.pk, after_snapshot=after_snapshot)
        return Response(after_snapshot, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        instance = self.get_object()
        serializer = InvoiceWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        with ledger_transaction("invoice.update"):
            before_snapshot = self._snapshot(instance.pk)
            invoice = update_invoice(instance.pk, serializer.to_update_record())
            after_snapshot = self._snapshot(invoice.pk)
            self._audit(action="update", entity_id=invoice.pk, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        with ledger_transaction("invoice.delete"):
            before_snapshot = self._snapshot(instance.pk)
            delete_invoice(instance.pk)
            self._audit(action="delete", entity_id=instance.pk, before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path="next-number")
    def next_number(self, request):
        return Response({"invoice_number": peek_next_number(DocumentSequence.Kind.INVOICE)})


class PaymentViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Payment.objects.select_related("customer").prefetch_related("allocations__invoice")
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "billing.view",
        "retrieve": "billing.view",
        "next_number": "billing.view",
        "allocation_preview": "billing.view",
        "create": "billing.create",
        "update": "billing.edit",
        "destroy": "billing.delete",
    }
    http_method_names = ["get", "post", "put", "delete", "head", "options"]
    audit_entity = "payment"

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params

        customer_id = _uuid_param(params, "customer")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        query = params.get("q")
        if query:
            qs = qs.filter(
                Q(payment_number__icontains=query) | Q(customer__name__icontains=query) | Q(notes__icontains=query)
            )
        date_from, date_to = parse_date_range(params)
        if date_from:
            qs = qs.filter(payment_date__gte=date_from)
        if date_to:
            qs = qs.filter(payment_date__lte=date_to)
        return qs

    def _snapshot(self, payment_id):
        return PaymentSerializer(Payment.objects.get(pk=payment_id)).data

    def create(self, request, *args, **kwargs):
        serializer = PaymentWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        with ledger_transaction("payment.create"):
            payment = create_payment(serializer.to_record())
            after_snapshot = self._snapshot(payment.pk)
            self._audit(action="create", entity_id=payment.pk, after_snapshot=after_snapshot)
        return Response(after_snapshot, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        instance = self.get_object()
        serializer = PaymentWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        with ledger_transaction("payment.update"):
            before_snapshot = self._snapshot(instance.pk)
            payment = update_payment(instance.pk, serializer.to_record())
            after_snapshot = self._snapshot(payment.pk)
            self._audit(action="update", entity_id=payment.pk, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        with ledger_transaction("payment.delete"):
            before_snapshot = self._snapshot(instance.pk)
            delete_payment(instance.pk)
            self._audit(action="delete", entity_id=instance.pk, before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path="next-number")
    def next_number(self, request):
        return Response({"payment_number": peek_next_number(DocumentSequence.Kind.PAYMENT)})

    @action(detail=False, methods=["get"], url_path="allocation-preview")
    def allocation_preview(self, request):
        serializer = AllocationPreviewRequestSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        plan = allocate(serializer.validated_data["customer"], serializer.validated_data["amount"])
        return Response(AllocationPlanSerializer(plan).data)
