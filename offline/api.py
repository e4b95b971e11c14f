# offline/api.py

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from core.exceptions import StorageUnavailable

from .services import get_offline_queue


@login_required
@require_GET
def queue_status(request):
    """
    GET /offline/status/

    "pending" and "operations" are read from the store, so they include what
    other processes queued or drained. "is_online" is the connectivity this
    process last observed: its startup check, or the monitor when one runs
    in the same process (watch_connectivity runs its own).

    {
      "state": "offline_buffering",
      "is_online": false,
      "pending": 2,
      "operations": [{"kind": "create", "table": "sales", ...}, ...]
    }
    """
    queue = get_offline_queue()
    try:
        operations = [op.to_payload() for op in queue.pending()]
    except StorageUnavailable as exc:
        return JsonResponse({"error": str(exc)}, status=503)
    return JsonResponse(
        {
            "state": queue.state.value,
            "is_online": queue.is_online,
            "pending": len(operations),
            "operations": operations,
        }
    )


@login_required
@require_POST
def queue_sync(request):
    """
    POST /offline/sync/

    Runs one drain pass and returns its counters.
    """
    queue = get_offline_queue()
    try:
        result = queue.drain()
    except StorageUnavailable as exc:
        return JsonResponse({"error": str(exc)}, status=503)
    return JsonResponse({"state": queue.state.value, **result.as_dict()})
