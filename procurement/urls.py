from django.urls import path
from rest_framework.routers import DefaultRouter

from procurement.views import PurchaseOrderViewSet, PurchaseRequestEventsView, PurchaseRequestViewSet

router = DefaultRouter()
router.register(r"purchase-requests", PurchaseRequestViewSet, basename="purchase-request")
router.register(r"purchase-orders", PurchaseOrderViewSet, basename="purchase-order")

urlpatterns = [
    path("purchase-requests/events/", PurchaseRequestEventsView.as_view(), name="purchase-request-events"),
] + router.urls
