from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from core.models import Vessel
from procurement.models import PurchaseRequest
from procurement.services import create_purchase_request


class Command(BaseCommand):
    help = "Seed demo vessels, crew and shore accounts plus one purchase request for local development."

    def _ensure_user(self, User, username, *, role, vessel=None, first_name="", last_name="", **extra):
        user, created = User.objects.get_or_create(
            username=username,
            defaults={
                "email": f"{username}@example.com",
                "role": role,
                "vessel": vessel,
                "first_name": first_name,
                "last_name": last_name,
                "is_active": True,
                **extra,
            },
        )
        if created:
            user.set_password(f"{username}1234")
            user.save(update_fields=["password"])
        return user

    def handle(self, *args, **options):
        User = get_user_model()

        ocean_star, _ = Vessel.objects.get_or_create(imo="IMO9876543", defaults={"name": "MV Ocean Star"})
        Vessel.objects.get_or_create(imo="IMO9876544", defaults={"name": "MV Atlantic Wave"})
        Vessel.objects.get_or_create(imo="IMO9876545", defaults={"name": "MV Pacific Dream"})

        self._ensure_user(User, "admin", role=User.Role.ADMIN, is_staff=True, is_superuser=True)
        self._ensure_user(User, "ops", role=User.Role.OPS, first_name="Operations", last_name="Desk")
        self._ensure_user(User, "finance", role=User.Role.FINANCE)
        captain = self._ensure_user(User, "captain", role=User.Role.CAPITAINE, vessel=ocean_star, first_name="Jean", last_name="Marin")
        self._ensure_user(User, "chief_engineer", role=User.Role.CHEF_MECANICIEN, vessel=ocean_star)

        if not PurchaseRequest.objects.filter(vessel=ocean_star).exists():
            pr = create_purchase_request(
                created_by=captain,
                vessel=ocean_star,
                category=PurchaseRequest.Category.SPARE_PARTS,
                priority=PurchaseRequest.Priority.HIGH,
                notes="Main engine overhaul spares.",
                products=[
                    {"name": "Fuel injector nozzle", "quantity": 6, "unit": "pcs", "reference": "MAN-L32-FIN", "rob": 2},
                    {"name": "Cylinder liner O-ring", "quantity": 12, "unit": "pcs", "rob": 0},
                    {"name": "Lube oil filter cartridge", "quantity": 4, "unit": "pcs"},
                ],
            )
            self.stdout.write(f"Purchase request: {pr.reference}")

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: <username>/<username>1234 for admin, ops, finance, captain, chief_engineer")
