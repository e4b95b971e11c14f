from django.core.management.base import BaseCommand

from core.services.storage import LocalStorage, get_default_store


class Command(BaseCommand):
    help = (
        "Delete every locally saved entry (collections, pending operations). "
        "Document counters are kept."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--noinput",
            "--no-input",
            action="store_false",
            dest="interactive",
            help="Do not ask for confirmation.",
        )

    def handle(self, *args, **options):
        storage = LocalStorage(get_default_store())

        if options["interactive"]:
            answer = input(
                f"This will delete all local entries under '{storage.namespace}'. "
                "Type 'yes' to continue: "
            )
            if answer.strip().lower() != "yes":
                self.stdout.write("Cancelled.")
                return

        removed = storage.clear_local_data()
        self.stdout.write(self.style.SUCCESS(f"Removed {removed} local entrie(s)."))
