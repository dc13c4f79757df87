import uuid

from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response


def success_envelope(data, **extra):
    return {"success": True, "data": data, **extra}


def success_response(data, *, status_code=status.HTTP_200_OK, **extra):
    return Response(success_envelope(data, **extra), status=status_code)


def parse_bool(value):
    """Interpret query-string booleans; ``None`` means the parameter was absent."""
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def parse_uuid(value, field_name):
    """Validate an optional UUID query parameter."""
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError({field_name: "Must be a valid UUID."})
