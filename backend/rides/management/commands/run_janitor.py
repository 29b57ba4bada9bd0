from django.core.management.base import BaseCommand

from services.janitor import run_janitor_sweep


class Command(BaseCommand):
    help = "Run one janitor sweep: time out searches, expire offers, offline silent drivers and reconcile payments."

    def handle(self, *args, **options):
        report = run_janitor_sweep()

        summary = ", ".join(f"{name}={count}" for name, count in report.as_dict().items() if count)
        self.stdout.write(
            self.style.SUCCESS(f"Janitor sweep complete. {summary or 'Nothing to do.'}")
        )
