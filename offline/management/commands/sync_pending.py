from django.core.management.base import BaseCommand

from offline.services import get_offline_queue


class Command(BaseCommand):
    help = "Replay the pending offline operations once."

    def handle(self, *args, **options):
        queue = get_offline_queue()

        if not queue.is_online:
            self.stdout.write(
                self.style.WARNING(f"Offline, {len(queue)} operation(s) kept in queue.")
            )
            return

        result = queue.drain()
        style = self.style.SUCCESS if not result.failed else self.style.WARNING
        self.stdout.write(
            style(
                f"{result.attempted} attempted, {result.succeeded} succeeded, "
                f"{result.failed} failed, {result.remaining} remaining."
            )
        )
