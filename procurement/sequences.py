from __future__ import annotations

from django.apps import apps
from django.db import transaction
from django.utils import timezone

PURCHASE_REQUEST_PREFIX = "PR"
PURCHASE_ORDER_PREFIX = "BC"

REFERENCE_MODELS = {
    PURCHASE_REQUEST_PREFIX: "procurement.PurchaseRequest",
    PURCHASE_ORDER_PREFIX: "procurement.PurchaseOrder",
}


def format_reference(prefix: str, year: int, value: int) -> str:
    return f"{prefix}-{year}-{value:03d}"


def parse_sequence(reference: str) -> int | None:
    suffix = str(reference).rsplit("-", 1)[-1]
    if not suffix.isdigit():
        return None
    return int(suffix)


def highest_existing_sequence(prefix: str, year: int) -> int:
    """Largest numeric suffix already stored for ``prefix``/``year``, or 0.

    Suffixes are compared as integers, so ``BC-2025-1000`` ranks above
    ``BC-2025-999`` even though it sorts lower as a string.
    """
    model_label = REFERENCE_MODELS.get(prefix)
    if model_label is None:
        return 0
    model = apps.get_model(model_label)
    existing = model.objects.filter(reference__startswith=f"{prefix}-{year}-").values_list("reference", flat=True)
    return max([value for value in (parse_sequence(reference) for reference in existing) if value is not None] + [0])


@transaction.atomic
def next_reference(prefix: str, year: int | None = None) -> str:
    """
    Reserve the next human reference for ``prefix`` in ``year``.

    The counter row is locked for the rest of the enclosing transaction, so two
    concurrent creators can never be handed the same value.
    Example: PR-2025-001
    """
    from procurement.models import ReferenceSequence

    year = year or timezone.now().year
    sequence, _ = ReferenceSequence.objects.select_for_update().get_or_create(
        prefix=prefix,
        year=year,
        defaults={"last_value": lambda: highest_existing_sequence(prefix, year)},
    )
    sequence.last_value += 1
    sequence.save(update_fields=["last_value", "updated_at"])
    return format_reference(prefix, year, sequence.last_value)
