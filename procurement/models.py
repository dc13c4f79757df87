import uuid

from django.db import models
from django.db.models import Q, Sum
from django.db.models.functions import Coalesce

from core.models import User, Vessel


class PurchaseRequest(models.Model):
    class Category(models.TextChoices):
        SPARE_PARTS = "SPARE_PARTS", "Spare parts"
        CONSUMABLES = "CONSUMABLES", "Consumables"
        SAFETY_EQUIPMENT = "SAFETY_EQUIPMENT", "Safety equipment"
        TOOLS = "TOOLS", "Tools"
        LUBRICANTS = "LUBRICANTS", "Lubricants"
        OTHER = "OTHER", "Other"

    class Priority(models.TextChoices):
        LOW = "LOW", "Low"
        MEDIUM = "MEDIUM", "Medium"
        HIGH = "HIGH", "High"
        URGENT = "URGENT", "Urgent"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=32, unique=True)
    custom_reference = models.CharField(max_length=128, null=True, blank=True)
    category = models.CharField(max_length=32, choices=Category.choices)
    priority = models.CharField(max_length=16, choices=Priority.choices, default=Priority.MEDIUM)
    notes = models.TextField(null=True, blank=True)

    # Names are snapshotted so the request stays readable after the account or vessel is removed.
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="purchase_requests")
    created_by_name = models.CharField(max_length=255, null=True, blank=True)
    vessel = models.ForeignKey(Vessel, on_delete=models.SET_NULL, null=True, blank=True, related_name="purchase_requests")
    vessel_name = models.CharField(max_length=255, null=True, blank=True)

    master_approved = models.BooleanField(default=False)
    # An approved request always names its approver; deactivate the account instead of deleting it.
    master_approved_by = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="approved_purchase_requests",
    )
    master_approved_at = models.DateTimeField(null=True, blank=True)

    sent_to_quotation = models.BooleanField(default=False)
    quotation_sent_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="quoted_purchase_requests",
    )
    quotation_sent_at = models.DateTimeField(null=True, blank=True)
    quotation_completed_at = models.DateTimeField(null=True, blank=True)
    quotation_remark = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["vessel", "created_at"], name="pr_vessel_created_idx"),
            models.Index(fields=["created_by", "created_at"], name="pr_creator_created_idx"),
            models.Index(fields=["master_approved"], name="pr_master_approved_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(master_approved=True, master_approved_at__isnull=False, master_approved_by__isnull=False)
                | Q(master_approved=False, master_approved_at__isnull=True, master_approved_by__isnull=True),
                name="pr_master_approval_consistent",
            ),
            models.CheckConstraint(
                condition=Q(quotation_completed_at__isnull=True) | Q(sent_to_quotation=True),
                name="pr_quotation_completed_after_sent",
            ),
        ]

    def __str__(self):
        return self.reference


class PRLineItemQuerySet(models.QuerySet):
    def with_ordered_quantity(self):
        return self.annotate(
            ordered_quantity=Coalesce(
                Sum(
                    "po_lines__validated_quantity",
                    filter=~Q(po_lines__purchase_order__status=PurchaseOrder.Status.CANCELLED),
                ),
                0,
            )
        )


class PRLineItem(models.Model):
    class UnavailableReason(models.TextChoices):
        OUT_OF_STOCK = "OUT_OF_STOCK", "Out of stock"
        NO_OFFER = "NO_OFFER", "No offer"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_request = models.ForeignKey(PurchaseRequest, on_delete=models.CASCADE, related_name="products")
    position = models.PositiveIntegerField(default=0)
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    unit = models.CharField(max_length=32)
    reference = models.CharField(max_length=128, null=True, blank=True)
    rob = models.IntegerField(null=True, blank=True)
    images = models.JSONField(default=list, blank=True)

    quoted_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    supplier_name = models.CharField(max_length=255, null=True, blank=True)
    remark = models.TextField(null=True, blank=True)

    unavailable_reason = models.CharField(max_length=16, choices=UnavailableReason.choices, null=True, blank=True)
    was_unavailable = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = PRLineItemQuerySet.as_manager()

    class Meta:
        ordering = ["position", "created_at"]
        indexes = [
            models.Index(fields=["purchase_request", "position"], name="prline_request_position_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name="prline_quantity_positive"),
        ]

    def compute_ordered_quantity(self):
        return (
            self.po_lines.exclude(purchase_order__status=PurchaseOrder.Status.CANCELLED).aggregate(
                total=Coalesce(Sum("validated_quantity"), 0)
            )["total"]
        )

    @property
    def is_available(self):
        return self.unavailable_reason is None


class PurchaseOrder(models.Model):
    class Status(models.TextChoices):
        DRAFT = "DRAFT", "Draft"
        VALIDATED = "VALIDATED", "Validated"
        SENT = "SENT", "Sent"
        DELIVERED = "DELIVERED", "Delivered"
        CANCELLED = "CANCELLED", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=32, unique=True)
    purchase_request = models.ForeignKey(PurchaseRequest, on_delete=models.PROTECT, related_name="purchase_orders")
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="purchase_orders")
    notes = models.TextField(null=True, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["purchase_request", "status"], name="po_request_status_idx"),
            models.Index(fields=["status", "created_at"], name="po_status_created_idx"),
        ]

    def __str__(self):
        return self.reference


class PurchaseOrderLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name="products")
    pr_product = models.ForeignKey(PRLineItem, on_delete=models.PROTECT, related_name="po_lines")
    name = models.CharField(max_length=255)
    original_quantity = models.PositiveIntegerField()
    validated_quantity = models.PositiveIntegerField()
    unit = models.CharField(max_length=32)
    quoted_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    supplier_name = models.CharField(max_length=255, null=True, blank=True)
    remark = models.TextField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["purchase_order"], name="poline_order_idx"),
            models.Index(fields=["pr_product"], name="poline_pr_product_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(validated_quantity__lte=models.F("original_quantity")),
                name="poline_validated_within_original",
            ),
        ]


class ReferenceSequence(models.Model):
    id = models.BigAutoField(primary_key=True)
    prefix = models.CharField(max_length=8)
    year = models.PositiveIntegerField()
    last_value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["prefix", "year"], name="uniq_reference_sequence_prefix_year"),
        ]
