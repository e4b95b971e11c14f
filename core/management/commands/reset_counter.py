from django.core.management.base import BaseCommand, CommandError

from core.models import DocumentKind
from core.services.numbering import get_number_generator


class Command(BaseCommand):
    help = (
        "Reset the counter of a document kind. "
        "Numbers issued after a reset may repeat earlier ones."
    )

    def add_arguments(self, parser):
        parser.add_argument("kind", choices=DocumentKind.values)
        parser.add_argument(
            "--value",
            type=int,
            default=0,
            help="New last issued value (default: 0, next number ends in 0001).",
        )

    def handle(self, *args, **options):
        try:
            counter = get_number_generator().reset(options["kind"], options["value"])
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

        self.stdout.write(
            self.style.SUCCESS(
                f"Counter {counter.document_kind.value} set to {counter.last_value}."
            )
        )
