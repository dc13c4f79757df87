import asyncio
import json
import time
from datetime import timedelta
from decimal import Decimal

from asgiref.sync import async_to_sync
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.db.models import ProtectedError
from django.http import StreamingHttpResponse
from django.test import AsyncRequestFactory, TestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient, force_authenticate

from common.exceptions import Conflict, InvalidState
from core.models import AuditLog, Vessel
from procurement.events import (
    EVENT_CONNECTED,
    EVENT_PING,
    EVENT_PR_CHANGE,
    InProcessChangeBus,
    format_sse,
    get_change_bus,
    reset_change_bus,
)
from procurement.models import PRLineItem, PurchaseOrder, PurchaseRequest, ReferenceSequence
from procurement.sequences import format_reference, highest_existing_sequence, next_reference
from procurement.services import (
    compose_purchase_order,
    create_purchase_request,
    delete_purchase_request,
    get_purchase_request,
    orderable_line_items,
    pending_purchase_requests,
    replace_line_items,
    send_to_quotation,
    set_master_approval,
    submit_quotation,
    update_purchase_order,
    update_purchase_request,
)
from procurement.views import PurchaseRequestEventsView


def _decode_frame(frame):
    if isinstance(frame, bytes):
        frame = frame.decode()
    assert frame.startswith("data: ") and frame.endswith("\n\n"), frame
    return json.loads(frame[len("data: "):])


@override_settings(PROCUREMENT_EVENTS_HEARTBEAT_SECONDS=5)
class ProcurementTestCase(TestCase):
    def setUp(self):
        reset_change_bus()
        self.addCleanup(reset_change_bus)

        self.client = APIClient()
        self.user_model = get_user_model()
        Role = self.user_model.Role

        self.vessel_a = Vessel.objects.create(name="MV Ocean Star", imo="IMO1000001")
        self.vessel_b = Vessel.objects.create(name="MV Atlantic Wave", imo="IMO1000002")

        self.captain_a = self.user_model.objects.create_user(
            username="captain-a",
            password="pass1234",
            first_name="Jean",
            last_name="Marin",
            role=Role.CAPITAINE,
            vessel=self.vessel_a,
        )
        self.mate_a = self.user_model.objects.create_user(
            username="mate-a",
            password="pass1234",
            role=Role.CHIEF_MATE,
            vessel=self.vessel_a,
        )
        self.captain_b = self.user_model.objects.create_user(
            username="captain-b",
            password="pass1234",
            role=Role.CAPITAINE,
            vessel=self.vessel_b,
        )
        self.ops = self.user_model.objects.create_user(username="ops", password="pass1234", role=Role.OPS)
        self.admin = self.user_model.objects.create_user(username="admin", password="pass1234", role=Role.ADMIN)

    def _create_request(self, *, vessel=None, created_by=None, products=None, **kwargs):
        return create_purchase_request(
            created_by=created_by or self.captain_a,
            vessel=vessel or self.vessel_a,
            category=kwargs.pop("category", PurchaseRequest.Category.SPARE_PARTS),
            products=products or [{"name": "Fuel injector", "quantity": 10, "unit": "pcs"}],
            **kwargs,
        )

    def _quoted_request(self, quantities=(10,), **kwargs):
        pr = self._create_request(
            products=[{"name": f"Item {index}", "quantity": quantity, "unit": "pcs"} for index, quantity in enumerate(quantities)],
            **kwargs,
        )
        send_to_quotation(pr, sent_by=self.ops)
        items = list(pr.products.order_by("position"))
        submit_quotation(
            pr,
            line_updates=[{"id": item.id, "quoted_price": Decimal("5.00"), "supplier_name": "Acme"} for item in items],
        )
        pr.refresh_from_db()
        return pr, items

    def _ordered_quantity(self, item):
        return PRLineItem.objects.with_ordered_quantity().get(pk=item.pk).ordered_quantity


class ReferenceSequenceTests(TestCase):
    def test_references_increment_per_prefix_and_year(self):
        self.assertEqual(next_reference("PR", 2025), "PR-2025-001")
        self.assertEqual(next_reference("PR", 2025), "PR-2025-002")
        self.assertEqual(next_reference("BC", 2025), "BC-2025-001")
        self.assertEqual(next_reference("PR", 2026), "PR-2026-001")
        self.assertEqual(ReferenceSequence.objects.get(prefix="PR", year=2025).last_value, 2)

    def test_sequential_creation_has_no_gaps_or_duplicates(self):
        references = [next_reference("PR", 2025) for _ in range(12)]

        self.assertEqual(references, [f"PR-2025-{value:03d}" for value in range(1, 13)])

    def test_counter_is_seeded_from_highest_numeric_suffix(self):
        for reference in ["PR-2025-998", "PR-2025-1000", "PR-2025-999", "PR-2024-5000"]:
            PurchaseRequest.objects.create(reference=reference, category=PurchaseRequest.Category.OTHER)

        self.assertEqual(highest_existing_sequence("PR", 2025), 1000)
        self.assertEqual(next_reference("PR", 2025), "PR-2025-1001")

    def test_format_pads_to_three_digits_and_widens_beyond(self):
        self.assertEqual(format_reference("BC", 2025, 7), "BC-2025-007")
        self.assertEqual(format_reference("BC", 2025, 1234), "BC-2025-1234")

    def test_year_defaults_to_current_year(self):
        self.assertEqual(next_reference("PR"), f"PR-{timezone.now().year}-001")


class RequestStoreTests(ProcurementTestCase):
    def test_create_snapshots_names_and_generates_reference(self):
        pr = self._create_request(priority=PurchaseRequest.Priority.HIGH, notes="Engine spares")

        self.assertEqual(pr.reference, f"PR-{timezone.now().year}-001")
        self.assertEqual(pr.created_by_name, "Jean Marin")
        self.assertEqual(pr.vessel_name, "MV Ocean Star")
        self.assertEqual(pr.priority, PurchaseRequest.Priority.HIGH)
        self.assertEqual(pr.products.count(), 1)
        self.assertFalse(pr.master_approved)
        self.assertFalse(pr.sent_to_quotation)

    def test_create_requires_category_vessel_and_products(self):
        with self.assertRaises(ValidationError):
            create_purchase_request(created_by=self.captain_a, vessel=self.vessel_a, category="", products=[{"name": "x", "quantity": 1, "unit": "pcs"}])
        with self.assertRaises(ValidationError):
            create_purchase_request(created_by=self.captain_a, vessel=None, category="OTHER", products=[{"name": "x", "quantity": 1, "unit": "pcs"}])
        with self.assertRaises(ValidationError):
            create_purchase_request(created_by=self.captain_a, vessel=self.vessel_a, category="OTHER", products=[])
        self.assertFalse(PurchaseRequest.objects.exists())

    def test_name_snapshot_survives_creator_removal(self):
        pr = self._create_request()

        self.captain_a.delete()
        pr.refresh_from_db()

        self.assertIsNone(pr.created_by_id)
        self.assertEqual(pr.created_by_name, "Jean Marin")

    def test_replace_line_items_before_quotation(self):
        pr = self._create_request()

        replace_line_items(pr, [{"name": "Gasket", "quantity": 3, "unit": "pcs"}, {"name": "Bolt", "quantity": 8, "unit": "pcs"}])

        self.assertEqual(list(pr.products.order_by("position").values_list("name", flat=True)), ["Gasket", "Bolt"])

    def test_replace_line_items_after_quotation_is_rejected(self):
        pr, _ = self._quoted_request()

        with self.assertRaises(InvalidState):
            replace_line_items(pr, [{"name": "Gasket", "quantity": 3, "unit": "pcs"}])

        self.assertEqual(pr.products.get().quoted_price, Decimal("5.00"))

    def test_update_applies_only_present_keys(self):
        pr = self._create_request(notes="Original notes", priority=PurchaseRequest.Priority.LOW)

        update_purchase_request(pr, {"priority": PurchaseRequest.Priority.URGENT}, actor=self.captain_a)
        pr.refresh_from_db()

        self.assertEqual(pr.priority, PurchaseRequest.Priority.URGENT)
        self.assertEqual(pr.notes, "Original notes")
        self.assertEqual(pr.category, PurchaseRequest.Category.SPARE_PARTS)

    def test_update_cannot_withdraw_from_quotation(self):
        pr, _ = self._quoted_request()

        with self.assertRaises(InvalidState):
            update_purchase_request(pr, {"sent_to_quotation": False}, actor=self.ops)

    def test_delete_cascades_to_line_items(self):
        pr = self._create_request()

        delete_purchase_request(pr)

        self.assertFalse(PurchaseRequest.objects.exists())
        self.assertFalse(PRLineItem.objects.exists())

    def test_delete_is_refused_when_orders_exist(self):
        pr, (item,) = self._quoted_request()
        compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 2}])

        with self.assertRaises(Conflict):
            delete_purchase_request(pr)

        self.assertTrue(PurchaseRequest.objects.filter(pk=pr.pk).exists())

    def test_get_purchase_request_raises_not_found(self):
        with self.assertRaises(NotFound):
            get_purchase_request("not-a-uuid")
        with self.assertRaises(NotFound):
            get_purchase_request("00000000-0000-0000-0000-000000000000")


class ApprovalGateTests(ProcurementTestCase):
    def test_approve_revoke_and_reapprove(self):
        pr = self._create_request()

        self.assertTrue(set_master_approval(pr, approved_by=self.captain_a, approve=True))
        pr.refresh_from_db()
        first_stamp = pr.master_approved_at
        self.assertTrue(pr.master_approved)
        self.assertEqual(pr.master_approved_by, self.captain_a)
        self.assertIsNotNone(first_stamp)

        self.assertTrue(set_master_approval(pr, approve=False))
        pr.refresh_from_db()
        self.assertFalse(pr.master_approved)
        self.assertIsNone(pr.master_approved_by)
        self.assertIsNone(pr.master_approved_at)

        self.assertTrue(set_master_approval(pr, approved_by=self.captain_a, approve=True))
        pr.refresh_from_db()
        self.assertTrue(pr.master_approved)
        self.assertGreaterEqual(pr.master_approved_at, first_stamp)

    def test_repeating_current_state_is_a_no_op(self):
        pr = self._create_request()
        set_master_approval(pr, approved_by=self.captain_a, approve=True)
        pr.refresh_from_db()
        stamp = pr.master_approved_at

        with self.captureOnCommitCallbacks() as callbacks:
            changed = set_master_approval(pr, approved_by=self.captain_a, approve=True)

        self.assertFalse(changed)
        self.assertEqual(callbacks, [])
        pr.refresh_from_db()
        self.assertEqual(pr.master_approved_at, stamp)
        self.assertFalse(set_master_approval(self._create_request(), approve=False))

    def test_approval_requires_an_approver(self):
        pr = self._create_request()

        with self.assertRaises(ValidationError):
            set_master_approval(pr, approved_by=None, approve=True)

    def test_approver_cannot_be_deleted_while_request_is_approved(self):
        pr = self._create_request(created_by=self.mate_a)
        set_master_approval(pr, approved_by=self.captain_a, approve=True)

        with self.assertRaises(ProtectedError):
            self.captain_a.delete()

        pr.refresh_from_db()
        self.assertTrue(pr.master_approved)
        self.assertEqual(pr.master_approved_by_id, self.captain_a.id)
        self.assertIsNotNone(pr.master_approved_at)

    def test_approved_request_without_approver_is_rejected_by_the_database(self):
        pr = self._create_request()
        set_master_approval(pr, approved_by=self.captain_a, approve=True)

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                PurchaseRequest.objects.filter(pk=pr.pk).update(master_approved_by=None)

        pr.refresh_from_db()
        self.assertEqual(pr.master_approved_by_id, self.captain_a.id)

    def test_approver_can_be_deleted_after_revocation(self):
        pr = self._create_request(created_by=self.mate_a)
        set_master_approval(pr, approved_by=self.captain_a, approve=True)
        set_master_approval(pr, approve=False)

        self.captain_a.delete()

        pr.refresh_from_db()
        self.assertFalse(pr.master_approved)
        self.assertIsNone(pr.master_approved_by_id)


class QuotationProcessorTests(ProcurementTestCase):
    def test_send_to_quotation_is_one_way(self):
        pr = self._create_request()

        send_to_quotation(pr, sent_by=self.ops)
        pr.refresh_from_db()
        self.assertTrue(pr.sent_to_quotation)
        self.assertEqual(pr.quotation_sent_by, self.ops)
        self.assertIsNotNone(pr.quotation_sent_at)

        with self.assertRaises(InvalidState):
            send_to_quotation(pr, sent_by=self.ops)

    def test_submit_requires_request_sent_to_quotation(self):
        pr = self._create_request()
        item = pr.products.get()

        with self.assertRaises(InvalidState):
            submit_quotation(pr, line_updates=[{"id": item.id, "quoted_price": Decimal("5.00")}])

        pr.refresh_from_db()
        self.assertIsNone(pr.quotation_completed_at)

    def test_submit_stamps_completion_and_remark(self):
        pr, (item,) = self._quoted_request()
        submit_quotation(pr, line_updates=[], remark="Prices valid 30 days")
        pr.refresh_from_db()

        self.assertIsNotNone(pr.quotation_completed_at)
        self.assertEqual(pr.quotation_remark, "Prices valid 30 days")
        item.refresh_from_db()
        self.assertEqual(item.quoted_price, Decimal("5.00"))
        self.assertEqual(item.supplier_name, "Acme")

    def test_absent_keys_are_kept_and_null_clears(self):
        pr, (item,) = self._quoted_request()

        submit_quotation(pr, line_updates=[{"id": item.id, "remark": "Genuine parts only"}])
        item.refresh_from_db()
        self.assertEqual(item.quoted_price, Decimal("5.00"))
        self.assertEqual(item.remark, "Genuine parts only")

        submit_quotation(pr, line_updates=[{"id": item.id, "supplier_name": None}])
        item.refresh_from_db()
        self.assertIsNone(item.supplier_name)
        self.assertEqual(item.remark, "Genuine parts only")

    def test_was_unavailable_is_sticky_after_reactivation(self):
        pr, (item,) = self._quoted_request()

        submit_quotation(pr, line_updates=[{"id": item.id, "unavailable_reason": PRLineItem.UnavailableReason.OUT_OF_STOCK}])
        item.refresh_from_db()
        self.assertTrue(item.was_unavailable)
        self.assertEqual(orderable_line_items(pr), [])

        submit_quotation(pr, line_updates=[{"id": item.id, "unavailable_reason": None, "quoted_price": Decimal("6.00")}])
        item.refresh_from_db()
        self.assertIsNone(item.unavailable_reason)
        self.assertTrue(item.was_unavailable)
        self.assertEqual([line.id for line in orderable_line_items(pr)], [item.id])

        submit_quotation(pr, line_updates=[{"id": item.id, "remark": "Delivered next port"}])
        item.refresh_from_db()
        self.assertTrue(item.was_unavailable)

    def test_update_for_foreign_line_item_is_rejected(self):
        pr, _ = self._quoted_request()
        other = self._create_request(vessel=self.vessel_b, created_by=self.captain_b)

        with self.assertRaises(ValidationError):
            submit_quotation(pr, line_updates=[{"id": other.products.get().id, "quoted_price": Decimal("1.00")}])

    def test_completed_quotation_implies_sent(self):
        pr, _ = self._quoted_request()

        self.assertIsNotNone(pr.quotation_completed_at)
        self.assertTrue(pr.sent_to_quotation)
        self.assertFalse(PurchaseRequest.objects.filter(quotation_completed_at__isnull=False, sent_to_quotation=False).exists())


class OrderComposerTests(ProcurementTestCase):
    def test_second_order_is_clamped_to_remaining_quantity(self):
        pr, (item,) = self._quoted_request((10,))

        first = compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 6}])
        self.assertEqual(self._ordered_quantity(item), 6)
        self.assertEqual(first.status, PurchaseOrder.Status.DRAFT)
        self.assertEqual(first.reference, f"BC-{timezone.now().year}-001")

        second = compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 5}])
        line = second.products.get()
        self.assertEqual(line.original_quantity, 4)
        self.assertEqual(line.validated_quantity, 4)
        self.assertEqual(line.pr_product_id, item.id)
        self.assertEqual(self._ordered_quantity(item), 10)

        with self.assertRaises(ValidationError):
            compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])
        self.assertEqual(PurchaseOrder.objects.count(), 2)

    def test_lines_snapshot_quotation_data(self):
        pr, (item,) = self._quoted_request((3,))

        po = compose_purchase_order(pr, created_by=self.ops, notes="Deliver to Rotterdam", selections=[{"pr_product_id": item.id, "validated_quantity": 3}])
        line = po.products.get()

        self.assertEqual(po.notes, "Deliver to Rotterdam")
        self.assertEqual(line.name, "Item 0")
        self.assertEqual(line.unit, "pcs")
        self.assertEqual(line.quoted_price, Decimal("5.00"))
        self.assertEqual(line.supplier_name, "Acme")

    def test_all_zero_selection_is_rejected(self):
        pr, items = self._quoted_request((5, 5))

        with self.assertRaises(ValidationError):
            compose_purchase_order(
                pr,
                created_by=self.ops,
                selections=[{"pr_product_id": item.id, "validated_quantity": 0} for item in items],
            )
        self.assertFalse(PurchaseOrder.objects.exists())

    def test_negative_quantity_is_clamped_to_zero(self):
        pr, items = self._quoted_request((5, 5))

        po = compose_purchase_order(
            pr,
            created_by=self.ops,
            selections=[
                {"pr_product_id": items[0].id, "validated_quantity": -3},
                {"pr_product_id": items[1].id, "validated_quantity": 2},
            ],
        )

        quantities = dict(po.products.values_list("pr_product_id", "validated_quantity"))
        self.assertEqual(quantities, {items[0].id: 0, items[1].id: 2})

    def test_empty_and_duplicate_selections_are_rejected(self):
        pr, (item,) = self._quoted_request()

        with self.assertRaises(ValidationError):
            compose_purchase_order(pr, created_by=self.ops, selections=[])
        with self.assertRaises(ValidationError):
            compose_purchase_order(
                pr,
                created_by=self.ops,
                selections=[{"pr_product_id": item.id, "validated_quantity": 1}, {"pr_product_id": item.id, "validated_quantity": 1}],
            )

    def test_unavailable_item_is_rejected(self):
        pr, (item,) = self._quoted_request()
        submit_quotation(pr, line_updates=[{"id": item.id, "unavailable_reason": PRLineItem.UnavailableReason.NO_OFFER}])

        with self.assertRaises(ValidationError):
            compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])

    def test_quotation_must_be_completed(self):
        pr = self._create_request()
        item = pr.products.get()

        with self.assertRaises(ValidationError):
            compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])

        send_to_quotation(pr, sent_by=self.ops)
        with self.assertRaises(ValidationError):
            compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])

    def test_item_from_another_request_is_rejected(self):
        pr, _ = self._quoted_request()
        other, (other_item,) = self._quoted_request()

        with self.assertRaises(ValidationError):
            compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": other_item.id, "validated_quantity": 1}])

    def test_cancelled_order_releases_its_quantity(self):
        pr, (item,) = self._quoted_request((10,))
        po = compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 10}])
        self.assertEqual(orderable_line_items(pr), [])

        update_purchase_order(po, {"status": PurchaseOrder.Status.CANCELLED}, actor=self.ops)

        self.assertEqual(self._ordered_quantity(item), 0)
        replacement = compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 10}])
        self.assertEqual(replacement.products.get().validated_quantity, 10)

    def test_ordered_quantity_never_exceeds_requested_quantity(self):
        pr, items = self._quoted_request((4, 7))

        for requested in (3, 3, 9):
            selections = [
                {"pr_product_id": item.id, "validated_quantity": requested}
                for item in orderable_line_items(pr)
            ]
            if selections:
                compose_purchase_order(pr, created_by=self.ops, selections=selections)

        for item in PRLineItem.objects.with_ordered_quantity().filter(purchase_request=pr):
            self.assertLessEqual(item.ordered_quantity, item.quantity)
        self.assertEqual(orderable_line_items(pr), [])

    def test_reactivated_item_can_be_ordered_on_a_later_order(self):
        pr, items = self._quoted_request((5, 2))
        submit_quotation(pr, line_updates=[{"id": items[1].id, "unavailable_reason": PRLineItem.UnavailableReason.OUT_OF_STOCK}])
        compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": items[0].id, "validated_quantity": 5}])
        self.assertEqual([p.id for p in pending_purchase_requests()], [pr.id])

        submit_quotation(pr, line_updates=[{"id": items[1].id, "unavailable_reason": None}])
        self.assertEqual([p.id for p in pending_purchase_requests()], [pr.id])

        compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": items[1].id, "validated_quantity": 2}])
        self.assertEqual(pr.purchase_orders.count(), 2)
        self.assertEqual(pending_purchase_requests(), [])


class PurchaseOrderUpdateTests(ProcurementTestCase):
    def setUp(self):
        super().setUp()
        self.pr, (self.item,) = self._quoted_request((10,))
        self.po = compose_purchase_order(self.pr, created_by=self.ops, selections=[{"pr_product_id": self.item.id, "validated_quantity": 6}])
        self.line = self.po.products.get()

    def test_status_moves_forward(self):
        for status in (PurchaseOrder.Status.VALIDATED, PurchaseOrder.Status.SENT, PurchaseOrder.Status.DELIVERED):
            update_purchase_order(self.po, {"status": status}, actor=self.ops)
            self.po.refresh_from_db()
            self.assertEqual(self.po.status, status)

        with self.assertRaises(InvalidState):
            update_purchase_order(self.po, {"status": PurchaseOrder.Status.CANCELLED}, actor=self.ops)

    def test_invalid_transition_is_rejected(self):
        with self.assertRaises(InvalidState):
            update_purchase_order(self.po, {"status": PurchaseOrder.Status.DELIVERED}, actor=self.ops)

    def test_line_quantity_edit_is_bounded(self):
        update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 2}]}, actor=self.ops)
        self.line.refresh_from_db()
        self.assertEqual(self.line.validated_quantity, 2)
        self.assertEqual(self.line.original_quantity, 10)

        update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 7}]}, actor=self.ops)
        self.line.refresh_from_db()
        self.assertEqual(self.line.validated_quantity, 7)

        with self.assertRaises(ValidationError):
            update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 11}]}, actor=self.ops)
        self.line.refresh_from_db()
        self.assertEqual(self.line.validated_quantity, 7)

    def test_line_edit_cannot_exceed_what_other_orders_left(self):
        update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 1}]}, actor=self.ops)
        other = compose_purchase_order(self.pr, created_by=self.ops, selections=[{"pr_product_id": self.item.id, "validated_quantity": 9}])
        self.assertEqual(other.products.get().validated_quantity, 9)

        with self.assertRaises(ValidationError):
            update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 2}]}, actor=self.ops)
        self.assertEqual(self._ordered_quantity(self.item), self.item.quantity)

    def test_lines_are_frozen_once_sent(self):
        update_purchase_order(self.po, {"status": PurchaseOrder.Status.VALIDATED}, actor=self.ops)
        update_purchase_order(self.po, {"status": PurchaseOrder.Status.SENT}, actor=self.ops)

        with self.assertRaises(InvalidState):
            update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 1}]}, actor=self.ops)

    def test_order_must_keep_a_positive_line(self):
        with self.assertRaises(ValidationError):
            update_purchase_order(self.po, {"products": [{"id": self.line.id, "validated_quantity": 0}]}, actor=self.ops)


class ChangeNotificationBusTests(TestCase):
    def test_subscriber_receives_connected_then_events(self):
        bus = InProcessChangeBus(heartbeat_interval=5)
        subscription = bus.subscribe()

        self.assertEqual(_decode_frame(next(subscription)), {"type": EVENT_CONNECTED})
        self.assertEqual(bus.publish({"type": EVENT_PR_CHANGE, "action": "created"}), 1)
        self.assertEqual(_decode_frame(next(subscription)), {"type": EVENT_PR_CHANGE, "action": "created"})

    def test_heartbeat_is_emitted_when_idle(self):
        bus = InProcessChangeBus(heartbeat_interval=0.01)
        subscription = bus.subscribe()
        next(subscription)

        self.assertEqual(_decode_frame(next(subscription)), {"type": EVENT_PING})

    def test_ping_is_sent_on_schedule_during_traffic(self):
        bus = InProcessChangeBus(heartbeat_interval=0.05)
        subscription = bus.subscribe()
        next(subscription)

        bus.publish({"type": EVENT_PR_CHANGE, "action": "updated"})
        time.sleep(0.06)

        self.assertEqual(_decode_frame(next(subscription)), {"type": EVENT_PING})
        self.assertEqual(_decode_frame(next(subscription))["action"], "updated")

    def test_async_response_streams_frames(self):
        bus = InProcessChangeBus(heartbeat_interval=5)
        subscription = bus.subscribe()
        response = StreamingHttpResponse(subscription.aiter_frames(), content_type="text/event-stream")
        self.assertTrue(response.is_async)

        async def read_two_frames():
            stream = response.streaming_content
            frames = [await asyncio.wait_for(stream.__anext__(), timeout=1)]
            bus.publish({"type": EVENT_PR_CHANGE, "action": "created"})
            frames.append(await asyncio.wait_for(stream.__anext__(), timeout=1))
            await stream.aclose()
            return frames

        frames = async_to_sync(read_two_frames)()
        subscription.close()

        self.assertEqual(_decode_frame(frames[0]), {"type": EVENT_CONNECTED})
        self.assertEqual(_decode_frame(frames[1])["action"], "created")

    def test_async_stream_cancellation_deregisters(self):
        bus = InProcessChangeBus(heartbeat_interval=0.5)
        subscription = bus.subscribe()
        frames = subscription.aiter_frames()

        async def next_frame():
            return await frames.__anext__()

        async def disconnect_while_waiting():
            first = await next_frame()
            pending = asyncio.ensure_future(next_frame())
            await asyncio.sleep(0.05)
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass
            return first

        first = async_to_sync(disconnect_while_waiting)()

        self.assertEqual(_decode_frame(first), {"type": EVENT_CONNECTED})
        self.assertTrue(subscription.closed)
        self.assertEqual(bus.subscriber_count, 0)

    def test_close_deregisters_and_ends_iteration(self):
        bus = InProcessChangeBus(heartbeat_interval=5)
        subscription = bus.subscribe()
        other = bus.subscribe()
        self.assertEqual(bus.subscriber_count, 2)

        subscription.close()

        self.assertEqual(bus.subscriber_count, 1)
        self.assertEqual(list(subscription), [])
        self.assertEqual(bus.publish({"type": EVENT_PR_CHANGE}), 1)
        other.close()
        self.assertEqual(bus.subscriber_count, 0)

    def test_subscriber_that_cannot_accept_is_dropped(self):
        bus = InProcessChangeBus(heartbeat_interval=5, max_pending=1)
        subscription = bus.subscribe()

        self.assertEqual(bus.publish({"type": EVENT_PR_CHANGE}), 0)

        self.assertTrue(subscription.closed)
        self.assertEqual(bus.subscriber_count, 0)

    def test_format_sse(self):
        self.assertEqual(format_sse({"type": "ping"}), 'data: {"type": "ping"}\n\n')


class ChangeNotificationIntegrationTests(ProcurementTestCase):
    def test_mutations_publish_after_commit(self):
        subscription = get_change_bus().subscribe()
        next(subscription)

        with self.captureOnCommitCallbacks(execute=True):
            pr = self._create_request()

        event = _decode_frame(next(subscription))
        self.assertEqual(event["type"], EVENT_PR_CHANGE)
        self.assertEqual(event["action"], "created")
        self.assertEqual(event["purchase_request_id"], str(pr.id))
        self.assertIsInstance(event["timestamp"], int)

    def test_failed_mutation_publishes_nothing(self):
        pr, _ = self._quoted_request()

        with self.captureOnCommitCallbacks() as callbacks:
            with self.assertRaises(InvalidState):
                send_to_quotation(pr, sent_by=self.ops)

        self.assertEqual(callbacks, [])

    def test_event_stream_endpoint(self):
        self.client.force_authenticate(user=self.captain_a)
        bus = get_change_bus()

        response = self.client.get("/api/v1/purchase-requests/events/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/event-stream")
        self.assertEqual(response["Cache-Control"], "no-cache")
        stream = iter(response.streaming_content)
        self.assertEqual(_decode_frame(next(stream)), {"type": EVENT_CONNECTED})
        self.assertEqual(bus.subscriber_count, 1)

        bus.publish({"type": EVENT_PR_CHANGE, "action": "updated"})
        self.assertEqual(_decode_frame(next(stream))["action"], "updated")

        bus.close()
        self.assertEqual(list(stream), [])
        self.assertEqual(bus.subscriber_count, 0)

    @override_settings(PROCUREMENT_EVENTS_HEARTBEAT_SECONDS=0.2)
    def test_event_stream_under_asgi_is_async_and_ends_on_disconnect(self):
        request = AsyncRequestFactory().get("/api/v1/purchase-requests/events/")
        force_authenticate(request, user=self.captain_a)
        bus = get_change_bus()

        response = PurchaseRequestEventsView.as_view()(request)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.is_async)

        async def read_until_disconnect():
            frames = []
            received = asyncio.Event()

            async def reader():
                async for part in response:
                    frames.append(part)
                    received.set()

            task = asyncio.ensure_future(reader())
            await asyncio.wait_for(received.wait(), timeout=1)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return frames

        frames = async_to_sync(read_until_disconnect)()

        self.assertEqual(_decode_frame(frames[0]), {"type": EVENT_CONNECTED})
        self.assertEqual(bus.subscriber_count, 0)

    def test_event_stream_requires_authentication(self):
        response = self.client.get("/api/v1/purchase-requests/events/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(get_change_bus().subscriber_count, 0)


class PurchaseRequestApiTests(ProcurementTestCase):
    def _payload(self, **overrides):
        payload = {
            "category": "SPARE_PARTS",
            "priority": "HIGH",
            "notes": "Main engine spares",
            "products": [
                {"name": "Fuel injector", "quantity": 6, "unit": "pcs", "reference": "MAN-FIN", "rob": 1},
                {"name": "O-ring", "quantity": 12, "unit": "pcs", "images": ["https://cdn.example.com/o-ring.jpg"]},
            ],
        }
        payload.update(overrides)
        return payload

    def test_crew_creates_request_for_own_vessel(self):
        self.client.force_authenticate(user=self.captain_a)

        response = self.client.post("/api/v1/purchase-requests/", self._payload(vessel_id=str(self.vessel_b.id)), format="json")

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["success"])
        data = body["data"]
        self.assertEqual(data["reference"], f"PR-{timezone.now().year}-001")
        self.assertEqual(data["vessel"], str(self.vessel_a.id))
        self.assertEqual(data["vessel_name"], "MV Ocean Star")
        self.assertEqual(data["created_by_name"], "Jean Marin")
        self.assertEqual([p["name"] for p in data["products"]], ["Fuel injector", "O-ring"])
        self.assertEqual(data["products"][0]["ordered_quantity"], 0)
        self.assertEqual(data["products"][1]["images"], ["https://cdn.example.com/o-ring.jpg"])
        self.assertTrue(AuditLog.objects.filter(action="purchase_request.create", entity_id=data["id"]).exists())

    def test_admin_must_name_a_vessel(self):
        self.client.force_authenticate(user=self.admin)

        missing = self.client.post("/api/v1/purchase-requests/", self._payload(), format="json")
        created = self.client.post("/api/v1/purchase-requests/", self._payload(vessel_id=str(self.vessel_b.id)), format="json")

        self.assertEqual(missing.status_code, 400)
        self.assertIn("vessel_id", missing.json()["errors"])
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["data"]["vessel"], str(self.vessel_b.id))

    def test_validation_errors_use_error_envelope(self):
        self.client.force_authenticate(user=self.captain_a)

        response = self.client.post("/api/v1/purchase-requests/", self._payload(category=None, products=[]), format="json")

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["code"], "validation_error")
        self.assertEqual(body["status"], 400)
        self.assertIn("category", body["errors"])
        self.assertIn("products", body["errors"])
        self.assertIsInstance(body["error"], str)
        self.assertFalse(PurchaseRequest.objects.exists())

    def test_zero_quantity_is_rejected(self):
        self.client.force_authenticate(user=self.captain_a)

        response = self.client.post(
            "/api/v1/purchase-requests/",
            self._payload(products=[{"name": "Bolt", "quantity": 0, "unit": "pcs"}]),
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_shore_staff_cannot_create(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.post("/api/v1/purchase-requests/", self._payload(vessel_id=str(self.vessel_a.id)), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_crew_only_lists_own_vessel(self):
        own = self._create_request()
        other = self._create_request(vessel=self.vessel_b, created_by=self.captain_b)
        self.client.force_authenticate(user=self.captain_b)

        response = self.client.get("/api/v1/purchase-requests/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(sorted(body.keys()), ["count", "data", "next", "previous", "success"])
        ids = {item["id"] for item in body["data"]}
        self.assertIn(str(other.id), ids)
        self.assertNotIn(str(own.id), ids)

    def test_list_filters(self):
        approved = self._create_request()
        set_master_approval(approved, approved_by=self.captain_a, approve=True)
        pending = self._create_request(created_by=self.mate_a)
        other_vessel = self._create_request(vessel=self.vessel_b, created_by=self.captain_b)
        self.client.force_authenticate(user=self.ops)

        by_approval = self.client.get("/api/v1/purchase-requests/", {"master_approved": "true"})
        by_creator = self.client.get("/api/v1/purchase-requests/", {"created_by_id": str(self.mate_a.id)})
        by_vessel = self.client.get("/api/v1/purchase-requests/", {"vessel_id": str(self.vessel_b.id)})
        invalid = self.client.get("/api/v1/purchase-requests/", {"vessel_id": "nope"})

        self.assertEqual([item["id"] for item in by_approval.json()["data"]], [str(approved.id)])
        self.assertEqual([item["id"] for item in by_creator.json()["data"]], [str(pending.id)])
        self.assertEqual([item["id"] for item in by_vessel.json()["data"]], [str(other_vessel.id)])
        self.assertEqual(invalid.status_code, 400)

    def test_list_is_newest_first(self):
        first = self._create_request()
        second = self._create_request()
        PurchaseRequest.objects.filter(pk=first.pk).update(created_at=timezone.now() - timedelta(days=1))
        self.client.force_authenticate(user=self.ops)

        response = self.client.get("/api/v1/purchase-requests/")

        self.assertEqual([item["id"] for item in response.json()["data"]], [str(second.id), str(first.id)])

    def test_other_vessel_request_is_not_found(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.captain_b)

        response = self.client.get(f"/api/v1/purchase-requests/{pr.id}/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_unknown_request_is_not_found(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.get("/api/v1/purchase-requests/00000000-0000-0000-0000-000000000000/")

        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])

    def test_put_updates_header_fields(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.mate_a)

        response = self.client.put(
            f"/api/v1/purchase-requests/{pr.id}/",
            {"notes": "Needed before drydock", "priority": "URGENT", "custom_reference": "DD-2025"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["notes"], "Needed before drydock")
        self.assertEqual(data["priority"], "URGENT")
        self.assertEqual(data["custom_reference"], "DD-2025")
        self.assertEqual(data["category"], "SPARE_PARTS")
        log = AuditLog.objects.get(action="purchase_request.update", entity_id=pr.id)
        self.assertEqual(log.before_snapshot["priority"], "MEDIUM")
        self.assertEqual(log.after_snapshot["priority"], "URGENT")

    def test_crew_cannot_touch_quotation_fields(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.captain_a)

        response = self.client.patch(f"/api/v1/purchase-requests/{pr.id}/", {"sent_to_quotation": True}, format="json")

        self.assertEqual(response.status_code, 403)
        pr.refresh_from_db()
        self.assertFalse(pr.sent_to_quotation)

    def test_shore_staff_cannot_approve_through_put(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.ops)

        response = self.client.put(f"/api/v1/purchase-requests/{pr.id}/", {"master_approved": True}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_put_runs_quotation_workflow(self):
        pr = self._create_request()
        item = pr.products.get()
        self.client.force_authenticate(user=self.ops)

        sent = self.client.put(f"/api/v1/purchase-requests/{pr.id}/", {"sent_to_quotation": True}, format="json")
        quoted = self.client.put(
            f"/api/v1/purchase-requests/{pr.id}/",
            {
                "quotation_remark": "Best offer",
                "quotation_products": [{"id": str(item.id), "quoted_price": "5.00", "supplier_name": "Acme"}],
            },
            format="json",
        )

        self.assertEqual(sent.status_code, 200)
        self.assertEqual(sent.json()["data"]["quotation_sent_by"], str(self.ops.id))
        self.assertEqual(quoted.status_code, 200)
        data = quoted.json()["data"]
        self.assertIsNotNone(data["quotation_completed_at"])
        self.assertEqual(data["quotation_remark"], "Best offer")
        self.assertEqual(data["products"][0]["quoted_price"], "5.00")
        self.assertEqual(data["products"][0]["supplier_name"], "Acme")

    def test_approval_endpoint(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.captain_a)

        approved = self.client.post(f"/api/v1/purchase-requests/{pr.id}/approval/", {"approve": True}, format="json")
        repeated = self.client.post(f"/api/v1/purchase-requests/{pr.id}/approval/", {"approve": True}, format="json")
        revoked = self.client.post(f"/api/v1/purchase-requests/{pr.id}/approval/", {"approve": False}, format="json")

        self.assertEqual(approved.status_code, 200)
        self.assertTrue(approved.json()["data"]["master_approved"])
        self.assertEqual(approved.json()["data"]["master_approved_by"], str(self.captain_a.id))
        self.assertEqual(repeated.json()["data"]["master_approved_at"], approved.json()["data"]["master_approved_at"])
        data = revoked.json()["data"]
        self.assertFalse(data["master_approved"])
        self.assertIsNone(data["master_approved_by"])
        self.assertIsNone(data["master_approved_at"])
        self.assertEqual(AuditLog.objects.filter(action="purchase_request.approve").count(), 1)
        self.assertEqual(AuditLog.objects.filter(action="purchase_request.revoke").count(), 1)

    def test_only_the_captain_approves(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.mate_a)

        response = self.client.post(f"/api/v1/purchase-requests/{pr.id}/approval/", {"approve": True}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_send_to_quotation_twice_conflicts(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.ops)

        first = self.client.post(f"/api/v1/purchase-requests/{pr.id}/send-to-quotation/")
        second = self.client.post(f"/api/v1/purchase-requests/{pr.id}/send-to-quotation/")

        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.json()["data"]["sent_to_quotation"])
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "invalid_state")

    def test_quotation_endpoint_marks_unavailable(self):
        pr = self._create_request()
        send_to_quotation(pr, sent_by=self.ops)
        item = pr.products.get()
        self.client.force_authenticate(user=self.ops)

        response = self.client.post(
            f"/api/v1/purchase-requests/{pr.id}/quotation/",
            {"quotation_products": [{"id": str(item.id), "unavailable_reason": "OUT_OF_STOCK"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        product = response.json()["data"]["products"][0]
        self.assertEqual(product["unavailable_reason"], "OUT_OF_STOCK")
        self.assertTrue(product["was_unavailable"])

    def test_replace_products_endpoint(self):
        pr = self._create_request()
        self.client.force_authenticate(user=self.captain_a)

        replaced = self.client.put(
            f"/api/v1/purchase-requests/{pr.id}/products/",
            {"products": [{"name": "Hydraulic hose", "quantity": 2, "unit": "m"}]},
            format="json",
        )
        send_to_quotation(pr, sent_by=self.ops)
        refused = self.client.put(
            f"/api/v1/purchase-requests/{pr.id}/products/",
            {"products": [{"name": "Valve", "quantity": 1, "unit": "pcs"}]},
            format="json",
        )

        self.assertEqual(replaced.status_code, 200)
        self.assertEqual([p["name"] for p in replaced.json()["data"]["products"]], ["Hydraulic hose"])
        self.assertEqual(refused.status_code, 409)
        self.assertEqual(list(pr.products.values_list("name", flat=True)), ["Hydraulic hose"])

    def test_orderable_products_and_pending_worklist(self):
        pr, items = self._quoted_request((4, 3))
        submit_quotation(pr, line_updates=[{"id": items[1].id, "unavailable_reason": "NO_OFFER"}])
        self._create_request()
        self.client.force_authenticate(user=self.ops)

        orderable = self.client.get(f"/api/v1/purchase-requests/{pr.id}/orderable-products/")
        pending = self.client.get("/api/v1/purchase-requests/pending/")

        self.assertEqual([p["id"] for p in orderable.json()["data"]], [str(items[0].id)])
        self.assertEqual(orderable.json()["data"][0]["remaining_quantity"], 4)
        self.assertEqual([p["id"] for p in pending.json()["data"]], [str(pr.id)])

    def test_delete_requires_admin_and_no_orders(self):
        pr = self._create_request()
        ordered, (item,) = self._quoted_request()
        compose_purchase_order(ordered, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])

        self.client.force_authenticate(user=self.captain_a)
        forbidden = self.client.delete(f"/api/v1/purchase-requests/{pr.id}/")
        self.client.force_authenticate(user=self.admin)
        deleted = self.client.delete(f"/api/v1/purchase-requests/{pr.id}/")
        conflict = self.client.delete(f"/api/v1/purchase-requests/{ordered.id}/")

        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.json()["data"], {"id": str(pr.id)})
        self.assertFalse(PurchaseRequest.objects.filter(pk=pr.pk).exists())
        self.assertTrue(AuditLog.objects.filter(action="purchase_request.delete", entity_id=pr.id).exists())
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["code"], "conflict")


class PurchaseOrderApiTests(ProcurementTestCase):
    def test_compose_via_api(self):
        pr, (item,) = self._quoted_request((10,))
        self.client.force_authenticate(user=self.ops)

        response = self.client.post(
            "/api/v1/purchase-orders/",
            {
                "purchase_request_id": str(pr.id),
                "notes": "Urgent",
                "products": [{"pr_product_id": str(item.id), "validated_quantity": 6}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["reference"], f"BC-{timezone.now().year}-001")
        self.assertEqual(data["status"], "DRAFT")
        self.assertEqual(data["purchase_request_id"], str(pr.id))
        self.assertEqual(data["total"], "30.00")
        self.assertEqual(data["products"][0]["pr_product_id"], str(item.id))
        self.assertEqual(data["products"][0]["original_quantity"], 10)
        self.assertEqual(data["products"][0]["validated_quantity"], 6)
        self.assertTrue(AuditLog.objects.filter(action="purchase_order.create").exists())

        detail = self.client.get(f"/api/v1/purchase-requests/{pr.id}/")
        self.assertEqual(detail.json()["data"]["products"][0]["ordered_quantity"], 6)

    def test_compose_rejections_are_bad_requests(self):
        pr, (item,) = self._quoted_request((10,))
        self.client.force_authenticate(user=self.ops)

        zero = self.client.post(
            "/api/v1/purchase-orders/",
            {"purchase_request_id": str(pr.id), "products": [{"pr_product_id": str(item.id), "validated_quantity": 0}]},
            format="json",
        )
        missing = self.client.post(
            "/api/v1/purchase-orders/",
            {"purchase_request_id": "00000000-0000-0000-0000-000000000000", "products": [{"pr_product_id": str(item.id), "validated_quantity": 1}]},
            format="json",
        )

        self.assertEqual(zero.status_code, 400)
        self.assertFalse(zero.json()["success"])
        self.assertEqual(missing.status_code, 404)

    def test_crew_cannot_compose(self):
        pr, (item,) = self._quoted_request()
        self.client.force_authenticate(user=self.captain_a)

        response = self.client.post(
            "/api/v1/purchase-orders/",
            {"purchase_request_id": str(pr.id), "products": [{"pr_product_id": str(item.id), "validated_quantity": 1}]},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_list_scoping_and_filters(self):
        pr_a, (item_a,) = self._quoted_request()
        pr_b, (item_b,) = self._quoted_request(vessel=self.vessel_b, created_by=self.captain_b)
        po_a = compose_purchase_order(pr_a, created_by=self.ops, selections=[{"pr_product_id": item_a.id, "validated_quantity": 1}])
        po_b = compose_purchase_order(pr_b, created_by=self.ops, selections=[{"pr_product_id": item_b.id, "validated_quantity": 1}])

        self.client.force_authenticate(user=self.captain_a)
        crew = self.client.get("/api/v1/purchase-orders/")
        self.client.force_authenticate(user=self.ops)
        by_creator = self.client.get("/api/v1/purchase-orders/", {"creator_id": str(self.captain_b.id)})
        by_request = self.client.get("/api/v1/purchase-orders/", {"purchase_request_id": str(pr_a.id)})

        self.assertEqual([po["id"] for po in crew.json()["data"]], [str(po_a.id)])
        self.assertEqual([po["id"] for po in by_creator.json()["data"]], [str(po_b.id)])
        self.assertEqual([po["id"] for po in by_request.json()["data"]], [str(po_a.id)])

    def test_update_status_and_lines(self):
        pr, (item,) = self._quoted_request((10,))
        po = compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 6}])
        line = po.products.get()
        self.client.force_authenticate(user=self.ops)

        edited = self.client.patch(
            f"/api/v1/purchase-orders/{po.id}/",
            {"status": "VALIDATED", "products": [{"id": str(line.id), "validated_quantity": 5, "remark": "Partial"}]},
            format="json",
        )
        skipped = self.client.put(f"/api/v1/purchase-orders/{po.id}/", {"status": "DELIVERED"}, format="json")

        self.assertEqual(edited.status_code, 200)
        self.assertEqual(edited.json()["data"]["status"], "VALIDATED")
        self.assertEqual(edited.json()["data"]["products"][0]["validated_quantity"], 5)
        self.assertEqual(edited.json()["data"]["products"][0]["remark"], "Partial")
        self.assertEqual(skipped.status_code, 409)
        self.assertEqual(skipped.json()["code"], "invalid_state")

    def test_orders_are_never_deleted(self):
        pr, (item,) = self._quoted_request()
        po = compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/purchase-orders/{po.id}/")

        self.assertEqual(response.status_code, 405)
        self.assertTrue(PurchaseOrder.objects.filter(pk=po.pk).exists())


class ClearPurchaseDataCommandTests(ProcurementTestCase):
    def test_dry_run_keeps_data_and_yes_deletes_everything(self):
        pr, (item,) = self._quoted_request()
        compose_purchase_order(pr, created_by=self.ops, selections=[{"pr_product_id": item.id, "validated_quantity": 1}])

        call_command("clear_purchase_data")
        self.assertTrue(PurchaseOrder.objects.exists())

        call_command("clear_purchase_data", "--yes")
        self.assertFalse(PurchaseOrder.objects.exists())
        self.assertFalse(PurchaseRequest.objects.exists())
        self.assertFalse(PRLineItem.objects.exists())
        self.assertFalse(ReferenceSequence.objects.exists())
        self.assertTrue(Vessel.objects.exists())
