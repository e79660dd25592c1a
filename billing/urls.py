from rest_framework.routers import DefaultRouter

from billing.views import CustomerViewSet, InvoiceViewSet, PaymentViewSet, ProductViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"invoices", InvoiceViewSet, basename="invoice")
router.register(r"payments", PaymentViewSet, basename="payment")

urlpatterns = router.urls
