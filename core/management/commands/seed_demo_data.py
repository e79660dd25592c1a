from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.utils import timezone

from billing.invoices import create_invoice
from billing.models import Customer, Product
from billing.payments import create_payment
from billing.records import InvoiceInput, InvoiceItemInput, PaymentInput

DEMO_USERS = [
    ("admin", "admin1234", "admin", True),
    ("accountant", "accountant1234", "accountant", False),
    ("clerk", "clerk1234", "clerk", False),
]


class Command(BaseCommand):
    help = "Seed demo customers, products, invoices and payments for local development."

    def handle(self, *args, **options):
        User = get_user_model()

        for username, password, role, is_superuser in DEMO_USERS:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "is_staff": is_superuser,
                    "is_superuser": is_superuser,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])

        customer, _ = Customer.objects.get_or_create(
            code="DEMO-C1",
            defaults={"name": "Demo Customer", "contact_person": "Sara", "phone": "+201000000001"},
        )
        bolts, _ = Product.objects.get_or_create(
            code="DEMO-P1",
            defaults={"name": "Steel Bolts (box)", "unit": "box", "price": Decimal("45.00")},
        )
        paint, _ = Product.objects.get_or_create(
            code="DEMO-P2",
            defaults={"name": "Wall Paint 4L", "unit": "can", "price": Decimal("120.00")},
        )

        if customer.invoices.exists():
            self.stdout.write("Demo invoices already present; skipping ledger entries.")
        else:
            today = timezone.localdate()
            create_invoice(
                InvoiceInput(
                    customer_id=customer.pk,
                    items=(
                        InvoiceItemInput(product_id=bolts.pk, quantity=Decimal("4")),
                        InvoiceItemInput(product_id=paint.pk, quantity=Decimal("2")),
                    ),
                    discount_amount=Decimal("20.00"),
                    invoice_date=today - timedelta(days=14),
                )
            )
            create_invoice(
                InvoiceInput(
                    customer_id=customer.pk,
                    items=(InvoiceItemInput(product_id=paint.pk, quantity=Decimal("1")),),
                    paid_amount=Decimal("50.00"),
                    invoice_date=today - timedelta(days=3),
                )
            )
            create_payment(PaymentInput(customer_id=customer.pk, amount=Decimal("300.00"), payment_date=today))

        customer.refresh_from_db()
        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, accountant/accountant1234, clerk/clerk1234")
        self.stdout.write(f"Customer: {customer.code} | Balance: {customer.balance}")
