import json
import uuid

from django.core.serializers.json import DjangoJSONEncoder

from core.models import AuditLog


def parse_uuid(value):
    if not value:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def _json_safe(snapshot):
    # Decimal amounts and dates are stored as strings, the way the API renders them.
    if snapshot is None:
        return None
    return json.loads(json.dumps(snapshot, cls=DjangoJSONEncoder))


def create_audit_log(*, actor=None, action, entity, entity_id=None, before_snapshot=None, after_snapshot=None, request_id=None):
    return AuditLog.objects.create(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=parse_uuid(entity_id),
        before_snapshot=_json_safe(before_snapshot),
        after_snapshot=_json_safe(after_snapshot),
        request_id=request_id,
    )


def create_audit_log_from_request(request, *, action, entity, entity_id=None, before_snapshot=None, after_snapshot=None):
    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user is not None and user.is_authenticated else None,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        request_id=get_request_id(request),
    )


class AuditedMutationMixin:
    """
    Records ``<audit_entity>.<action>`` rows for viewset mutations.

    Call it inside the transaction that performs the change so the audit row
    and the change commit or roll back together.
    """

    audit_entity = None

    def _audit(self, *, action, entity_id, before_snapshot=None, after_snapshot=None):
        return create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.{action}",
            entity=self.audit_entity,
            entity_id=entity_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )
