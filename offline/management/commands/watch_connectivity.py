import logging

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from offline.connectivity import ConnectivityMonitor
from offline.services import get_default_probe, get_offline_queue

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Poll CONNECTIVITY_PROBE_URL and replay pending operations "
        "each time the connection comes back."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Seconds between probes (default: CONNECTIVITY_POLL_INTERVAL).",
        )

    def handle(self, *args, **options):
        probe = get_default_probe()
        if probe is None:
            raise CommandError("CONNECTIVITY_PROBE_URL is not configured.")

        interval = options["interval"] or settings.CONNECTIVITY_POLL_INTERVAL
        queue = get_offline_queue()
        monitor = ConnectivityMonitor(queue.connectivity, probe, interval=interval)

        self.stdout.write(
            self.style.MIGRATE_HEADING(f"Watching {probe.url} every {interval:g}s (Ctrl+C to stop)...")
        )
        monitor.start()
        try:
            while True:
                monitor.join(timeout=1.0)
        except KeyboardInterrupt:
            logger.info("Connectivity watcher interrupted")
        finally:
            monitor.stop()
            self.stdout.write(f"Stopped, {len(queue)} operation(s) still queued.")
