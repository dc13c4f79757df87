import csv
import logging

from django.db import connections
from django.http import HttpResponse
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from common.permissions import RoleCapabilityPermission, is_vessel_user
from common.utils import success_response
from core.models import AuditLog, Vessel
from core.serializers import (
    AuditLogSerializer,
    CurrentUserSerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    VesselSerializer,
)

logger = logging.getLogger(__name__)


def scoped_queryset_for_user(queryset, user, vessel_field="vessel_id"):
    """Restrict ``queryset`` to what ``user`` may see.

    Crew members only see rows of the vessel they sail on; shore staff and
    admins see every vessel.
    """
    if not user.is_authenticated:
        return queryset.none()

    if user.is_superuser or not is_vessel_user(user):
        return queryset

    if getattr(user, "vessel_id", None):
        return queryset.filter(**{vessel_field: user.vessel_id})

    return queryset.none()


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class CurrentUserView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return success_response(CurrentUserSerializer(request.user).data)


class VesselViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Vessel.objects.filter(is_active=True).order_by("name")
    serializer_class = VesselSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "vessel.view", "retrieve": "vessel.view"}

    def get_queryset(self):
        return scoped_queryset_for_user(super().get_queryset(), self.request.user, vessel_field="id")

    def retrieve(self, request, *args, **kwargs):
        return success_response(self.get_serializer(self.get_object()).data)


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor", "vessel")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "audit_log.view", "retrieve": "audit_log.view", "export": "audit_log.view"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")
        entity_id = self.request.query_params.get("entity_id")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action:
            qs = qs.filter(action=action)
        if entity:
            qs = qs.filter(entity=entity)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)

        return qs

    def retrieve(self, request, *args, **kwargs):
        return success_response(self.get_serializer(self.get_object()).data)

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "vessel", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    getattr(log.vessel, "name", ""),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
