from rest_framework import serializers

from core.models import User, Vessel
from procurement.models import PRLineItem, PurchaseOrder, PurchaseOrderLine, PurchaseRequest
from procurement.services import remaining_quantity


class PRLineItemSerializer(serializers.ModelSerializer):
    ordered_quantity = serializers.SerializerMethodField()
    remaining_quantity = serializers.SerializerMethodField()

    class Meta:
        model = PRLineItem
        fields = [
            "id",
            "position",
            "name",
            "quantity",
            "unit",
            "reference",
            "rob",
            "images",
            "quoted_price",
            "supplier_name",
            "remark",
            "unavailable_reason",
            "was_unavailable",
            "ordered_quantity",
            "remaining_quantity",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_ordered_quantity(self, obj):
        ordered = getattr(obj, "ordered_quantity", None)
        if ordered is None:
            ordered = obj.compute_ordered_quantity()
        return ordered

    def get_remaining_quantity(self, obj):
        return remaining_quantity(obj)


class PurchaseRequestSerializer(serializers.ModelSerializer):
    products = PRLineItemSerializer(many=True, read_only=True)
    master_approved_by_name = serializers.CharField(source="master_approved_by.display_name", read_only=True, default=None)
    quotation_sent_by_name = serializers.CharField(source="quotation_sent_by.display_name", read_only=True, default=None)

    class Meta:
        model = PurchaseRequest
        fields = [
            "id",
            "reference",
            "custom_reference",
            "category",
            "priority",
            "notes",
            "created_by",
            "created_by_name",
            "vessel",
            "vessel_name",
            "master_approved",
            "master_approved_by",
            "master_approved_by_name",
            "master_approved_at",
            "sent_to_quotation",
            "quotation_sent_by",
            "quotation_sent_by_name",
            "quotation_sent_at",
            "quotation_completed_at",
            "quotation_remark",
            "created_at",
            "updated_at",
            "products",
        ]
        read_only_fields = fields


class LineItemInputSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    quantity = serializers.IntegerField(min_value=1)
    unit = serializers.CharField(max_length=32)
    reference = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    rob = serializers.IntegerField(required=False, allow_null=True)
    images = serializers.ListField(child=serializers.CharField(max_length=2048), required=False, default=list)


class PurchaseRequestCreateSerializer(serializers.Serializer):
    category = serializers.ChoiceField(choices=PurchaseRequest.Category.choices)
    priority = serializers.ChoiceField(choices=PurchaseRequest.Priority.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    custom_reference = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    vessel_id = serializers.PrimaryKeyRelatedField(queryset=Vessel.objects.all(), source="vessel", required=False)
    products = LineItemInputSerializer(many=True, allow_empty=False)

    def validate(self, attrs):
        # Crew always file requests for their own vessel.
        user = self.context["request"].user
        if getattr(user, "vessel_id", None):
            attrs["vessel"] = user.vessel
        if attrs.get("vessel") is None:
            raise serializers.ValidationError({"vessel_id": "Vessel is required."})
        return attrs


class QuotationLineSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    quoted_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    supplier_name = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    remark = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    unavailable_reason = serializers.ChoiceField(choices=PRLineItem.UnavailableReason.choices, required=False, allow_null=True)


class QuotationSubmitSerializer(serializers.Serializer):
    quotation_remark = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    quotation_products = QuotationLineSerializer(many=True)


class PurchaseRequestUpdateSerializer(serializers.Serializer):
    """Partial update body; only the keys sent by the client are applied."""

    category = serializers.ChoiceField(choices=PurchaseRequest.Category.choices, required=False)
    priority = serializers.ChoiceField(choices=PurchaseRequest.Priority.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    custom_reference = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    products = LineItemInputSerializer(many=True, required=False, allow_empty=False)
    master_approved = serializers.BooleanField(required=False)
    master_approved_by_id = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.all(), source="master_approved_by", required=False, allow_null=True
    )
    sent_to_quotation = serializers.BooleanField(required=False)
    quotation_sent_by_id = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.all(), source="quotation_sent_by", required=False, allow_null=True
    )
    quotation_remark = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    quotation_products = QuotationLineSerializer(many=True, required=False)

    capability_fields = {
        "master_approved": "purchase_request.approve",
        "master_approved_by": "purchase_request.approve",
        "sent_to_quotation": "purchase_request.quote",
        "quotation_sent_by": "purchase_request.quote",
        "quotation_remark": "purchase_request.quote",
        "quotation_products": "purchase_request.quote",
    }

    def required_capabilities(self):
        return {self.capability_fields[field] for field in self.validated_data if field in self.capability_fields}


class ApprovalSerializer(serializers.Serializer):
    approve = serializers.BooleanField()


class LineItemReplaceSerializer(serializers.Serializer):
    products = LineItemInputSerializer(many=True, allow_empty=False)


class PurchaseOrderLineSerializer(serializers.ModelSerializer):
    pr_product_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = PurchaseOrderLine
        fields = [
            "id",
            "pr_product_id",
            "name",
            "original_quantity",
            "validated_quantity",
            "unit",
            "quoted_price",
            "supplier_name",
            "remark",
        ]
        read_only_fields = fields


class PurchaseOrderSerializer(serializers.ModelSerializer):
    products = PurchaseOrderLineSerializer(many=True, read_only=True)
    purchase_request_id = serializers.UUIDField(read_only=True)
    purchase_request_reference = serializers.CharField(source="purchase_request.reference", read_only=True)
    vessel_name = serializers.CharField(source="purchase_request.vessel_name", read_only=True)
    created_by_name = serializers.CharField(source="created_by.display_name", read_only=True, default=None)
    total = serializers.SerializerMethodField()

    class Meta:
        model = PurchaseOrder
        fields = [
            "id",
            "reference",
            "purchase_request_id",
            "purchase_request_reference",
            "vessel_name",
            "status",
            "notes",
            "created_by",
            "created_by_name",
            "total",
            "created_at",
            "updated_at",
            "products",
        ]
        read_only_fields = fields

    def get_total(self, obj):
        total = sum(
            (line.quoted_price * line.validated_quantity for line in obj.products.all() if line.quoted_price is not None),
            start=0,
        )
        return f"{total:.2f}"


class OrderSelectionSerializer(serializers.Serializer):
    pr_product_id = serializers.UUIDField()
    validated_quantity = serializers.IntegerField()


class PurchaseOrderComposeSerializer(serializers.Serializer):
    purchase_request_id = serializers.UUIDField()
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    products = OrderSelectionSerializer(many=True)


class PurchaseOrderLineUpdateSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    validated_quantity = serializers.IntegerField(min_value=0, required=False)
    quoted_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    supplier_name = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    remark = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class PurchaseOrderUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=PurchaseOrder.Status.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    products = PurchaseOrderLineUpdateSerializer(many=True, required=False, allow_empty=False)
