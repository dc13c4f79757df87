import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models
from django.db.models import F, Q


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ReferenceSequence",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("prefix", models.CharField(max_length=8)),
                ("year", models.PositiveIntegerField()),
                ("last_value", models.PositiveIntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=["prefix", "year"], name="uniq_reference_sequence_prefix_year"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseRequest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("reference", models.CharField(max_length=32, unique=True)),
                ("custom_reference", models.CharField(blank=True, max_length=128, null=True)),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("SPARE_PARTS", "Spare parts"),
                            ("CONSUMABLES", "Consumables"),
                            ("SAFETY_EQUIPMENT", "Safety equipment"),
                            ("TOOLS", "Tools"),
                            ("LUBRICANTS", "Lubricants"),
                            ("OTHER", "Other"),
                        ],
                        max_length=32,
                    ),
                ),
                (
                    "priority",
                    models.CharField(
                        choices=[("LOW", "Low"), ("MEDIUM", "Medium"), ("HIGH", "High"), ("URGENT", "Urgent")],
                        default="MEDIUM",
                        max_length=16,
                    ),
                ),
                ("notes", models.TextField(blank=True, null=True)),
                ("created_by_name", models.CharField(blank=True, max_length=255, null=True)),
                ("vessel_name", models.CharField(blank=True, max_length=255, null=True)),
                ("master_approved", models.BooleanField(default=False)),
                ("master_approved_at", models.DateTimeField(blank=True, null=True)),
                ("sent_to_quotation", models.BooleanField(default=False)),
                ("quotation_sent_at", models.DateTimeField(blank=True, null=True)),
                ("quotation_completed_at", models.DateTimeField(blank=True, null=True)),
                ("quotation_remark", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="purchase_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "vessel",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="purchase_requests",
                        to="core.vessel",
                    ),
                ),
                (
                    "master_approved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="approved_purchase_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "quotation_sent_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="quoted_purchase_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["vessel", "created_at"], name="pr_vessel_created_idx"),
                    models.Index(fields=["created_by", "created_at"], name="pr_creator_created_idx"),
                    models.Index(fields=["master_approved"], name="pr_master_approved_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=Q(master_approved=True, master_approved_at__isnull=False, master_approved_by__isnull=False)
                        | Q(master_approved=False, master_approved_at__isnull=True, master_approved_by__isnull=True),
                        name="pr_master_approval_consistent",
                    ),
                    models.CheckConstraint(
                        condition=Q(quotation_completed_at__isnull=True) | Q(sent_to_quotation=True),
                        name="pr_quotation_completed_after_sent",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PRLineItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("position", models.PositiveIntegerField(default=0)),
                ("name", models.CharField(max_length=255)),
                ("quantity", models.PositiveIntegerField()),
                ("unit", models.CharField(max_length=32)),
                ("reference", models.CharField(blank=True, max_length=128, null=True)),
                ("rob", models.IntegerField(blank=True, null=True)),
                ("images", models.JSONField(blank=True, default=list)),
                ("quoted_price", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("supplier_name", models.CharField(blank=True, max_length=255, null=True)),
                ("remark", models.TextField(blank=True, null=True)),
                (
                    "unavailable_reason",
                    models.CharField(
                        blank=True,
                        choices=[("OUT_OF_STOCK", "Out of stock"), ("NO_OFFER", "No offer")],
                        max_length=16,
                        null=True,
                    ),
                ),
                ("was_unavailable", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "purchase_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="products",
                        to="procurement.purchaserequest",
                    ),
                ),
            ],
            options={
                "ordering": ["position", "created_at"],
                "indexes": [
                    models.Index(fields=["purchase_request", "position"], name="prline_request_position_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(quantity__gt=0), name="prline_quantity_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseOrder",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("reference", models.CharField(max_length=32, unique=True)),
                ("notes", models.TextField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("DRAFT", "Draft"),
                            ("VALIDATED", "Validated"),
                            ("SENT", "Sent"),
                            ("DELIVERED", "Delivered"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="DRAFT",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "purchase_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_orders",
                        to="procurement.purchaserequest",
                    ),
                ),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="purchase_orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["purchase_request", "status"], name="po_request_status_idx"),
                    models.Index(fields=["status", "created_at"], name="po_status_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseOrderLine",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("original_quantity", models.PositiveIntegerField()),
                ("validated_quantity", models.PositiveIntegerField()),
                ("unit", models.CharField(max_length=32)),
                ("quoted_price", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("supplier_name", models.CharField(blank=True, max_length=255, null=True)),
                ("remark", models.TextField(blank=True, null=True)),
                (
                    "purchase_order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="products",
                        to="procurement.purchaseorder",
                    ),
                ),
                (
                    "pr_product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="po_lines",
                        to="procurement.prlineitem",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["purchase_order"], name="poline_order_idx"),
                    models.Index(fields=["pr_product"], name="poline_pr_product_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=Q(validated_quantity__lte=F("original_quantity")),
                        name="poline_validated_within_original",
                    ),
                ],
            },
        ),
    ]
