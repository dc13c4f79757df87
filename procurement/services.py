import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Prefetch, Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import Conflict, InvalidState
from procurement.events import notify_purchase_request_change
from procurement.models import PRLineItem, PurchaseOrder, PurchaseOrderLine, PurchaseRequest
from procurement.sequences import PURCHASE_ORDER_PREFIX, PURCHASE_REQUEST_PREFIX, next_reference

logger = logging.getLogger(__name__)

UNSET = object()

HEADER_FIELDS = ("category", "priority", "notes", "custom_reference")
QUOTATION_LINE_FIELDS = ("quoted_price", "supplier_name", "remark", "unavailable_reason")
PURCHASE_ORDER_LINE_FIELDS = ("quoted_price", "supplier_name", "remark")

PURCHASE_ORDER_TRANSITIONS = {
    PurchaseOrder.Status.DRAFT: {PurchaseOrder.Status.VALIDATED, PurchaseOrder.Status.CANCELLED},
    PurchaseOrder.Status.VALIDATED: {PurchaseOrder.Status.SENT, PurchaseOrder.Status.CANCELLED},
    PurchaseOrder.Status.SENT: {PurchaseOrder.Status.DELIVERED, PurchaseOrder.Status.CANCELLED},
    PurchaseOrder.Status.DELIVERED: set(),
    PurchaseOrder.Status.CANCELLED: set(),
}
EDITABLE_PURCHASE_ORDER_STATUSES = {PurchaseOrder.Status.DRAFT, PurchaseOrder.Status.VALIDATED}


def _display_name(user):
    if user is None:
        return None
    return user.display_name


# Queries


def purchase_request_queryset():
    return PurchaseRequest.objects.select_related(
        "created_by",
        "vessel",
        "master_approved_by",
        "quotation_sent_by",
    ).prefetch_related(Prefetch("products", queryset=PRLineItem.objects.with_ordered_quantity().order_by("position", "created_at")))


def list_purchase_requests(queryset=None, *, vessel_id=None, created_by_id=None, master_approved=None):
    qs = purchase_request_queryset() if queryset is None else queryset
    if vessel_id:
        qs = qs.filter(vessel_id=vessel_id)
    if created_by_id:
        qs = qs.filter(created_by_id=created_by_id)
    if master_approved is not None:
        qs = qs.filter(master_approved=master_approved)
    return qs.order_by("-created_at")


def get_purchase_request(pr_id, queryset=None):
    qs = purchase_request_queryset() if queryset is None else queryset
    try:
        return qs.get(pk=pr_id)
    except (PurchaseRequest.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFound("Purchase request not found.")


def purchase_order_queryset():
    return PurchaseOrder.objects.select_related(
        "created_by",
        "purchase_request",
        "purchase_request__vessel",
    ).prefetch_related(Prefetch("products", queryset=PurchaseOrderLine.objects.select_related("pr_product")))


def list_purchase_orders(queryset=None, *, creator_id=None, purchase_request_id=None):
    qs = purchase_order_queryset() if queryset is None else queryset
    if creator_id:
        # Crew screens list the orders raised against the requests they created.
        qs = qs.filter(purchase_request__created_by_id=creator_id)
    if purchase_request_id:
        qs = qs.filter(purchase_request_id=purchase_request_id)
    return qs.order_by("-created_at")


def get_purchase_order(po_id, queryset=None):
    qs = purchase_order_queryset() if queryset is None else queryset
    try:
        return qs.get(pk=po_id)
    except (PurchaseOrder.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFound("Purchase order not found.")


def ordered_quantities(line_item_ids, *, exclude_order_id=None):
    """Map PR line item id -> quantity already claimed by non-cancelled purchase orders."""
    qs = PurchaseOrderLine.objects.filter(pr_product_id__in=list(line_item_ids)).exclude(
        purchase_order__status=PurchaseOrder.Status.CANCELLED
    )
    if exclude_order_id is not None:
        qs = qs.exclude(purchase_order_id=exclude_order_id)
    rows = qs.values("pr_product_id").annotate(total=Sum("validated_quantity")).values_list("pr_product_id", "total")
    return {pr_product_id: total or 0 for pr_product_id, total in rows}


def remaining_quantity(item):
    ordered = getattr(item, "ordered_quantity", None)
    if ordered is None:
        ordered = item.compute_ordered_quantity()
    return max(item.quantity - ordered, 0)


def orderable_line_items(pr):
    """Line items an operator may put on a new purchase order."""
    if pr.quotation_completed_at is None:
        return []
    items = pr.products.with_ordered_quantity().order_by("position", "created_at")
    return [item for item in items if item.unavailable_reason is None and remaining_quantity(item) > 0]


def is_pending_line_item(item):
    if item.unavailable_reason is not None:
        return True
    return item.was_unavailable and item.quoted_price is not None and remaining_quantity(item) > 0


def pending_purchase_requests(queryset=None):
    """Requests with unavailable articles, or reactivated articles still waiting for an order."""
    qs = purchase_request_queryset() if queryset is None else queryset
    candidates = qs.filter(quotation_completed_at__isnull=False, products__was_unavailable=True).distinct().order_by("-created_at")
    return [pr for pr in candidates if any(is_pending_line_item(item) for item in pr.products.all())]


# RequestStore


def _build_line_items(pr, products):
    return [
        PRLineItem(
            purchase_request=pr,
            position=position,
            name=product["name"],
            quantity=product["quantity"],
            unit=product["unit"],
            reference=product.get("reference") or None,
            rob=product.get("rob"),
            images=list(product.get("images") or []),
        )
        for position, product in enumerate(products)
    ]


@transaction.atomic
def create_purchase_request(*, created_by, vessel, category, products, priority=None, notes=None, custom_reference=None):
    if not category:
        raise ValidationError({"category": "Category is required."})
    if vessel is None:
        raise ValidationError({"vessel_id": "Vessel is required."})
    if not products:
        raise ValidationError({"products": "At least one product is required."})

    pr = PurchaseRequest.objects.create(
        reference=next_reference(PURCHASE_REQUEST_PREFIX),
        custom_reference=custom_reference or None,
        category=category,
        priority=priority or PurchaseRequest.Priority.MEDIUM,
        notes=notes or None,
        created_by=created_by,
        created_by_name=_display_name(created_by),
        vessel=vessel,
        vessel_name=vessel.name,
    )
    PRLineItem.objects.bulk_create(_build_line_items(pr, products))

    logger.info("purchase_request_created", extra={"purchase_request_id": str(pr.id), "reference": pr.reference})
    notify_purchase_request_change(pr.id, "created")
    return pr


@transaction.atomic
def replace_line_items(pr, products):
    """Swap the whole product list. Only allowed before the request enters quotation."""
    if pr.sent_to_quotation:
        raise InvalidState("Products cannot be replaced once the purchase request has been sent to quotation.")
    if not products:
        raise ValidationError({"products": "At least one product is required."})

    pr.products.all().delete()
    PRLineItem.objects.bulk_create(_build_line_items(pr, products))
    pr.save(update_fields=["updated_at"])
    notify_purchase_request_change(pr.id, "products_replaced")
    return pr


@transaction.atomic
def update_purchase_request(pr, patch, *, actor=None):
    """Apply a partial update; only the keys present in ``patch`` are touched."""
    pr = PurchaseRequest.objects.select_for_update().get(pk=pr.pk)

    if "master_approved" in patch:
        set_master_approval(
            pr,
            approved_by=patch.get("master_approved_by") or actor,
            approve=patch["master_approved"],
        )

    header = {field: patch[field] for field in HEADER_FIELDS if field in patch}
    if header:
        for field, value in header.items():
            setattr(pr, field, value)
        pr.save(update_fields=[*header, "updated_at"])
        notify_purchase_request_change(pr.id, "updated")

    if "products" in patch:
        replace_line_items(pr, patch["products"])

    if "sent_to_quotation" in patch:
        if patch["sent_to_quotation"]:
            send_to_quotation(pr, sent_by=patch.get("quotation_sent_by") or actor)
        elif pr.sent_to_quotation:
            raise InvalidState("A purchase request cannot be withdrawn from quotation.")

    if "quotation_products" in patch:
        submit_quotation(pr, line_updates=patch["quotation_products"], remark=patch.get("quotation_remark", UNSET))
    elif "quotation_remark" in patch:
        pr.quotation_remark = patch["quotation_remark"]
        pr.save(update_fields=["quotation_remark", "updated_at"])
        notify_purchase_request_change(pr.id, "updated")

    return pr


@transaction.atomic
def delete_purchase_request(pr):
    if pr.purchase_orders.exists():
        raise Conflict("This purchase request has purchase orders and cannot be deleted.")

    pr_id, reference = pr.id, pr.reference
    pr.delete()
    logger.info("purchase_request_deleted", extra={"purchase_request_id": str(pr_id), "reference": reference})
    notify_purchase_request_change(pr_id, "deleted")


# ApprovalGate


@transaction.atomic
def set_master_approval(pr, *, approved_by=None, approve):
    """Toggle master approval. Returns False when the request already had the requested state."""
    if approve:
        if pr.master_approved:
            return False
        if approved_by is None:
            raise ValidationError({"master_approved_by_id": "An approver is required to approve a purchase request."})
        pr.master_approved = True
        pr.master_approved_by = approved_by
        pr.master_approved_at = timezone.now()
    else:
        if not pr.master_approved:
            return False
        pr.master_approved = False
        pr.master_approved_by = None
        pr.master_approved_at = None

    pr.save(update_fields=["master_approved", "master_approved_by", "master_approved_at", "updated_at"])
    logger.info(
        "purchase_request_approval_changed",
        extra={"purchase_request_id": str(pr.id), "action": "approve" if approve else "revoke"},
    )
    notify_purchase_request_change(pr.id, "approved" if approve else "approval_revoked")
    return True


# QuotationProcessor


@transaction.atomic
def send_to_quotation(pr, *, sent_by):
    if pr.sent_to_quotation:
        raise InvalidState("This purchase request has already been sent to quotation.")

    pr.sent_to_quotation = True
    pr.quotation_sent_by = sent_by
    pr.quotation_sent_at = timezone.now()
    pr.save(update_fields=["sent_to_quotation", "quotation_sent_by", "quotation_sent_at", "updated_at"])

    logger.info("purchase_request_sent_to_quotation", extra={"purchase_request_id": str(pr.id)})
    notify_purchase_request_change(pr.id, "sent_to_quotation")
    return pr


@transaction.atomic
def submit_quotation(pr, *, line_updates, remark=UNSET):
    """
    Apply shore-side pricing and availability to the request's line items.

    Each update carries the line ``id`` plus any of ``quoted_price``,
    ``supplier_name``, ``remark`` and ``unavailable_reason``; absent keys are
    left untouched and explicit ``None`` clears the value. ``was_unavailable``
    is raised whenever the old or the new reason is set and is never lowered.

    Calling this again on a completed quotation re-opens it for the given
    lines and refreshes ``quotation_completed_at``.
    """
    if not pr.sent_to_quotation:
        raise InvalidState("The purchase request must be sent to quotation before a quotation can be submitted.")

    items = {item.id: item for item in pr.products.select_for_update()}
    for update in line_updates:
        item = items.get(update["id"])
        if item is None:
            raise ValidationError({"quotation_products": f"Product {update['id']} is not part of this purchase request."})

        previous_reason = item.unavailable_reason
        changed = [field for field in QUOTATION_LINE_FIELDS if field in update]
        for field in changed:
            setattr(item, field, update[field])

        if (previous_reason or item.unavailable_reason) and not item.was_unavailable:
            item.was_unavailable = True
            changed.append("was_unavailable")

        if changed:
            item.save(update_fields=[*changed, "updated_at"])

    pr.quotation_completed_at = timezone.now()
    update_fields = ["quotation_completed_at", "updated_at"]
    if remark is not UNSET:
        pr.quotation_remark = remark
        update_fields.append("quotation_remark")
    pr.save(update_fields=update_fields)

    logger.info("purchase_request_quotation_submitted", extra={"purchase_request_id": str(pr.id)})
    notify_purchase_request_change(pr.id, "quotation_submitted")
    return pr


# OrderComposer


@transaction.atomic
def compose_purchase_order(pr, *, created_by, selections, notes=None):
    """
    Create a draft purchase order from a quotation-completed request.

    ``selections`` is a list of ``{"pr_product_id", "validated_quantity"}``.
    The request and the selected line items stay locked until commit and the
    already-ordered quantities are re-read under that lock, so two operators
    composing at once cannot claim more than a line item's quantity.
    """
    if not selections:
        raise ValidationError({"products": "Select at least one product to order."})

    selected_ids = [selection["pr_product_id"] for selection in selections]
    if len(set(selected_ids)) != len(selected_ids):
        raise ValidationError({"products": "Each product can only be selected once."})

    pr = PurchaseRequest.objects.select_for_update().get(pk=pr.pk)
    if pr.quotation_completed_at is None:
        raise ValidationError({"purchase_request_id": "The quotation for this purchase request is not completed."})

    items = {item.id: item for item in pr.products.select_for_update().filter(id__in=selected_ids)}
    already_ordered = ordered_quantities(items.keys())

    planned = []
    for selection in selections:
        item = items.get(selection["pr_product_id"])
        if item is None:
            raise ValidationError({"products": f"Product {selection['pr_product_id']} is not part of this purchase request."})
        if item.unavailable_reason is not None:
            raise ValidationError({"products": f"Product '{item.name}' is marked unavailable and cannot be ordered."})

        original_quantity = item.quantity - already_ordered.get(item.id, 0)
        if original_quantity <= 0:
            raise ValidationError({"products": f"Product '{item.name}' has already been fully ordered."})

        validated_quantity = min(max(int(selection["validated_quantity"]), 0), original_quantity)
        planned.append((item, original_quantity, validated_quantity))

    if not any(validated_quantity > 0 for _, _, validated_quantity in planned):
        raise ValidationError({"products": "At least one product must have a validated quantity greater than zero."})

    po = PurchaseOrder.objects.create(
        reference=next_reference(PURCHASE_ORDER_PREFIX),
        purchase_request=pr,
        created_by=created_by,
        notes=notes or None,
        status=PurchaseOrder.Status.DRAFT,
    )
    PurchaseOrderLine.objects.bulk_create(
        [
            PurchaseOrderLine(
                purchase_order=po,
                pr_product=item,
                name=item.name,
                original_quantity=original_quantity,
                validated_quantity=validated_quantity,
                unit=item.unit,
                quoted_price=item.quoted_price,
                supplier_name=item.supplier_name,
                remark=item.remark,
            )
            for item, original_quantity, validated_quantity in planned
        ]
    )

    logger.info(
        "purchase_order_composed",
        extra={"purchase_order_id": str(po.id), "purchase_request_id": str(pr.id), "reference": po.reference},
    )
    notify_purchase_request_change(pr.id, "purchase_order_created")
    return po


def _apply_purchase_order_line_updates(po, updates):
    lines = {line.id: line for line in po.products.select_for_update()}
    for update in updates:
        if update["id"] not in lines:
            raise ValidationError({"products": f"Line {update['id']} is not part of this purchase order."})

    item_ids = {lines[update["id"]].pr_product_id for update in updates}
    items = {item.id: item for item in PRLineItem.objects.select_for_update().filter(id__in=item_ids)}
    claimed_elsewhere = ordered_quantities(item_ids, exclude_order_id=po.id)

    for update in updates:
        line = lines[update["id"]]
        changed = [field for field in PURCHASE_ORDER_LINE_FIELDS if field in update]
        for field in changed:
            setattr(line, field, update[field])

        if "validated_quantity" in update:
            quantity = update["validated_quantity"]
            item = items[line.pr_product_id]
            limit = min(line.original_quantity, item.quantity - claimed_elsewhere.get(item.id, 0))
            if quantity < 0 or quantity > limit:
                raise ValidationError({"products": f"Validated quantity for '{line.name}' must be between 0 and {max(limit, 0)}."})
            line.validated_quantity = quantity
            changed.append("validated_quantity")

        if changed:
            line.save(update_fields=changed)

    if not po.products.filter(validated_quantity__gt=0).exists():
        raise ValidationError({"products": "A purchase order must keep at least one product with a validated quantity greater than zero."})


@transaction.atomic
def update_purchase_order(po, patch, *, actor=None):
    po = PurchaseOrder.objects.select_for_update().get(pk=po.pk)
    update_fields = []

    if "products" in patch:
        if po.status not in EDITABLE_PURCHASE_ORDER_STATUSES:
            raise InvalidState("Products can only be edited while the purchase order is draft or validated.")
        _apply_purchase_order_line_updates(po, patch["products"])

    if "notes" in patch:
        po.notes = patch["notes"]
        update_fields.append("notes")

    new_status = patch.get("status")
    if new_status and new_status != po.status:
        if new_status not in PURCHASE_ORDER_TRANSITIONS[po.status]:
            raise InvalidState(f"A purchase order cannot move from {po.status} to {new_status}.")
        po.status = new_status
        update_fields.append("status")

    po.save(update_fields=[*update_fields, "updated_at"])
    logger.info(
        "purchase_order_updated",
        extra={
            "purchase_order_id": str(po.id),
            "reference": po.reference,
            "action": new_status or "edit",
            "user_id": str(actor.id) if actor else None,
        },
    )
    notify_purchase_request_change(po.purchase_request_id, "purchase_order_updated")
    return po
