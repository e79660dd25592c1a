import csv
import logging
from datetime import datetime, time

from django.db import connections
from django.http import HttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import parse_uuid
from common.permissions import RoleCapabilityPermission
from core.models import AuditLog
from core.serializers import AuditLogSerializer, RoleTokenObtainPairSerializer

logger = logging.getLogger(__name__)


class RoleTokenObtainPairView(TokenObtainPairView):
    serializer_class = RoleTokenObtainPairSerializer


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "audit.view", "retrieve": "audit.view", "export": "audit.view"}

    def _moment(self, name, end_of_day=False):
        raw = self.request.query_params.get(name)
        if not raw:
            return None
        moment = parse_datetime(raw)
        if moment is None:
            day = parse_date(raw)
            if day is None:
                raise ValidationError({name: "Use an ISO date or datetime."})
            moment = datetime.combine(day, time.max if end_of_day else time.min)
        if timezone.is_naive(moment):
            moment = timezone.make_aware(moment)
        return moment

    def _uuid(self, name):
        raw = self.request.query_params.get(name)
        if not raw:
            return None
        value = parse_uuid(raw)
        if value is None:
            raise ValidationError({name: "Must be a valid UUID."})
        return value

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        params = self.request.query_params

        start = self._moment("start_date")
        end = self._moment("end_date", end_of_day=True)
        actor_id = self._uuid("actor_id")
        entity_id = self._uuid("entity_id")

        if start:
            qs = qs.filter(created_at__gte=start)
        if end:
            qs = qs.filter(created_at__lte=end)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)
        if params.get("action"):
            qs = qs.filter(action=params["action"])
        if params.get("entity"):
            qs = qs.filter(entity=params["entity"])
        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    log.action,
                    log.entity,
                    log.entity_id or "",
                    log.request_id or "",
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
    except Exception:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
