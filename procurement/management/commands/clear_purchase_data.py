from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from procurement.models import PRLineItem, PurchaseOrder, PurchaseOrderLine, PurchaseRequest, ReferenceSequence


class Command(BaseCommand):
    help = "Delete every purchase order, purchase request and reference counter."

    def add_arguments(self, parser):
        parser.add_argument(
            "--yes",
            action="store_true",
            help="Confirm the deletion. Without it the command only reports what would be removed.",
        )

    def handle(self, *args, **options):
        # Children first: order lines protect request lines, orders protect requests.
        models = [
            ("purchase order lines", PurchaseOrderLine),
            ("purchase orders", PurchaseOrder),
            ("purchase request lines", PRLineItem),
            ("purchase requests", PurchaseRequest),
            ("reference counters", ReferenceSequence),
        ]

        if not options["yes"]:
            for label, model in models:
                self.stdout.write(f"- {model.objects.count()} {label}")
            self.stdout.write(self.style.WARNING("Dry run only. Re-run with --yes to delete."))
            return

        try:
            with transaction.atomic():
                for label, model in models:
                    deleted, _ = model.objects.all().delete()
                    self.stdout.write(f"- {deleted} {label} deleted")
        except Exception as exc:
            raise CommandError(f"Could not clear purchase data: {exc}") from exc

        self.stdout.write(self.style.SUCCESS("Purchase data cleared."))
