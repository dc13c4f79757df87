import json

from django.core.handlers.asgi import ASGIRequest
from django.http import StreamingHttpResponse
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.renderers import BaseRenderer, JSONRenderer
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.authentication import QueryStringJWTAuthentication
from common.permissions import RoleCapabilityPermission, user_has_capability
from common.utils import parse_bool, parse_uuid, success_response
from core.views import scoped_queryset_for_user
from procurement.events import get_change_bus
from procurement.serializers import (
    ApprovalSerializer,
    LineItemReplaceSerializer,
    PRLineItemSerializer,
    PurchaseOrderComposeSerializer,
    PurchaseOrderSerializer,
    PurchaseOrderUpdateSerializer,
    PurchaseRequestCreateSerializer,
    PurchaseRequestSerializer,
    PurchaseRequestUpdateSerializer,
    QuotationSubmitSerializer,
)
from procurement.services import (
    UNSET,
    compose_purchase_order,
    create_purchase_request,
    delete_purchase_request,
    get_purchase_order,
    get_purchase_request,
    list_purchase_orders,
    list_purchase_requests,
    orderable_line_items,
    pending_purchase_requests,
    purchase_order_queryset,
    purchase_request_queryset,
    replace_line_items,
    send_to_quotation,
    set_master_approval,
    submit_quotation,
    update_purchase_order,
    update_purchase_request,
)


class EventStreamRenderer(BaseRenderer):
    media_type = "text/event-stream"
    format = "event-stream"
    charset = "utf-8"

    def render(self, data, accepted_media_type=None, renderer_context=None):
        # Only error envelopes reach the renderer; the stream itself bypasses it.
        if data is None:
            return b""
        return json.dumps(data).encode(self.charset)


class PurchaseRequestViewSet(viewsets.GenericViewSet):
    serializer_class = PurchaseRequestSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase_request.view",
        "retrieve": "purchase_request.view",
        "create": "purchase_request.create",
        "update": "purchase_request.update",
        "partial_update": "purchase_request.update",
        "destroy": "purchase_request.delete",
        "approval": "purchase_request.approve",
        "send_to_quotation": "purchase_request.quote",
        "quotation": "purchase_request.quote",
        "products": "purchase_request.update",
        "orderable_products": "purchase_order.manage",
        "pending": "purchase_order.manage",
    }

    def get_queryset(self):
        return scoped_queryset_for_user(purchase_request_queryset(), self.request.user)

    def get_object(self):
        return get_purchase_request(self.kwargs["pk"], self.get_queryset())

    def _serialize(self, pr):
        return self.get_serializer(get_purchase_request(pr.pk)).data

    def _audit(self, action, pr, *, entity_id=None, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"purchase_request.{action}",
            entity="purchase_request",
            entity_id=entity_id or pr.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            vessel=pr.vessel,
        )

    def list(self, request):
        qs = list_purchase_requests(
            self.get_queryset(),
            vessel_id=parse_uuid(request.query_params.get("vessel_id"), "vessel_id"),
            created_by_id=parse_uuid(request.query_params.get("created_by_id"), "created_by_id"),
            master_approved=parse_bool(request.query_params.get("master_approved")),
        )
        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return success_response(self.get_serializer(qs, many=True).data)

    def create(self, request):
        serializer = PurchaseRequestCreateSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        pr = create_purchase_request(created_by=request.user, **serializer.validated_data)
        data = self._serialize(pr)
        self._audit("create", pr, after_snapshot=data)
        return success_response(data, status_code=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        return success_response(self.get_serializer(self.get_object()).data)

    def update(self, request, pk=None):
        pr = self.get_object()
        serializer = PurchaseRequestUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        for capability in serializer.required_capabilities():
            if not user_has_capability(request.user, capability):
                raise PermissionDenied("You do not have permission to change these fields.")

        before_snapshot = self.get_serializer(pr).data
        update_purchase_request(pr, serializer.validated_data, actor=request.user)
        data = self._serialize(pr)
        self._audit("update", pr, before_snapshot=before_snapshot, after_snapshot=data)
        return success_response(data)

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk)

    def destroy(self, request, pk=None):
        pr = self.get_object()
        pr_id = pr.id
        before_snapshot = self.get_serializer(pr).data
        delete_purchase_request(pr)
        self._audit("delete", pr, entity_id=pr_id, before_snapshot=before_snapshot)
        return success_response({"id": str(pr_id)})

    @action(detail=True, methods=["post"], url_path="approval")
    def approval(self, request, pk=None):
        pr = self.get_object()
        serializer = ApprovalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        approve = serializer.validated_data["approve"]

        before_snapshot = self.get_serializer(pr).data
        changed = set_master_approval(pr, approved_by=request.user, approve=approve)
        data = self._serialize(pr)
        if changed:
            self._audit("approve" if approve else "revoke", pr, before_snapshot=before_snapshot, after_snapshot=data)
        return success_response(data)

    @action(detail=True, methods=["post"], url_path="send-to-quotation")
    def send_to_quotation(self, request, pk=None):
        pr = self.get_object()
        send_to_quotation(pr, sent_by=request.user)
        data = self._serialize(pr)
        self._audit("send_to_quotation", pr, after_snapshot=data)
        return success_response(data)

    @action(detail=True, methods=["post"], url_path="quotation")
    def quotation(self, request, pk=None):
        pr = self.get_object()
        serializer = QuotationSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = self.get_serializer(pr).data
        submit_quotation(
            pr,
            line_updates=serializer.validated_data["quotation_products"],
            remark=serializer.validated_data.get("quotation_remark", UNSET),
        )
        data = self._serialize(pr)
        self._audit("quotation", pr, before_snapshot=before_snapshot, after_snapshot=data)
        return success_response(data)

    @action(detail=True, methods=["put"], url_path="products")
    def products(self, request, pk=None):
        pr = self.get_object()
        serializer = LineItemReplaceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = self.get_serializer(pr).data
        replace_line_items(pr, serializer.validated_data["products"])
        data = self._serialize(pr)
        self._audit("update", pr, before_snapshot=before_snapshot, after_snapshot=data)
        return success_response(data)

    @action(detail=True, methods=["get"], url_path="orderable-products")
    def orderable_products(self, request, pk=None):
        items = orderable_line_items(self.get_object())
        return success_response(PRLineItemSerializer(items, many=True).data)

    @action(detail=False, methods=["get"], url_path="pending")
    def pending(self, request):
        prs = pending_purchase_requests(self.get_queryset())
        page = self.paginate_queryset(prs)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return success_response(self.get_serializer(prs, many=True).data)


class PurchaseRequestEventsView(APIView):
    authentication_classes = [QueryStringJWTAuthentication]
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "purchase_request.view"}
    renderer_classes = [JSONRenderer, EventStreamRenderer]
    throttle_classes = []

    def get(self, request):
        subscription = get_change_bus().subscribe()
        stream = subscription.aiter_frames() if isinstance(request._request, ASGIRequest) else subscription
        response = StreamingHttpResponse(stream, content_type="text/event-stream")
        response["Cache-Control"] = "no-cache"
        response["X-Accel-Buffering"] = "no"
        return response


class PurchaseOrderViewSet(viewsets.GenericViewSet):
    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase_order.view",
        "retrieve": "purchase_order.view",
        "create": "purchase_order.manage",
        "update": "purchase_order.manage",
        "partial_update": "purchase_order.manage",
    }

    def get_queryset(self):
        return scoped_queryset_for_user(purchase_order_queryset(), self.request.user, vessel_field="purchase_request__vessel_id")

    def get_object(self):
        return get_purchase_order(self.kwargs["pk"], self.get_queryset())

    def _serialize(self, po):
        return self.get_serializer(get_purchase_order(po.pk)).data

    def _audit(self, action, po, *, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"purchase_order.{action}",
            entity="purchase_order",
            entity_id=po.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            vessel=po.purchase_request.vessel,
        )

    def list(self, request):
        qs = list_purchase_orders(
            self.get_queryset(),
            creator_id=parse_uuid(request.query_params.get("creator_id"), "creator_id"),
            purchase_request_id=parse_uuid(request.query_params.get("purchase_request_id"), "purchase_request_id"),
        )
        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return success_response(self.get_serializer(qs, many=True).data)

    def create(self, request):
        serializer = PurchaseOrderComposeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        pr_queryset = scoped_queryset_for_user(purchase_request_queryset(), request.user)
        pr = get_purchase_request(serializer.validated_data["purchase_request_id"], pr_queryset)

        po = compose_purchase_order(
            pr,
            created_by=request.user,
            notes=serializer.validated_data.get("notes"),
            selections=serializer.validated_data["products"],
        )
        data = self._serialize(po)
        self._audit("create", po, after_snapshot=data)
        return success_response(data, status_code=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        return success_response(self.get_serializer(self.get_object()).data)

    def update(self, request, pk=None):
        po = self.get_object()
        serializer = PurchaseOrderUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = self.get_serializer(po).data
        update_purchase_order(po, serializer.validated_data, actor=request.user)
        data = self._serialize(po)
        self._audit("update", po, before_snapshot=before_snapshot, after_snapshot=data)
        return success_response(data)

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk)
