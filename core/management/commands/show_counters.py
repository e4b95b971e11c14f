from django.core.management.base import BaseCommand

from core.exceptions import CounterCorrupted
from core.models import DocumentKind
from core.services.numbering import get_number_generator


class Command(BaseCommand):
    help = "Show the last issued number of every document kind."

    def handle(self, *args, **options):
        generator = get_number_generator()

        for kind in DocumentKind:
            try:
                counter = generator.current_value(kind)
            except CounterCorrupted as exc:
                self.stdout.write(self.style.ERROR(f"{kind.value:<18} {kind.prefix}  {exc}"))
                continue
            self.stdout.write(f"{kind.value:<18} {kind.prefix}  {counter.last_value}")
