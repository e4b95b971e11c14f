# core/api.py

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from core.exceptions import CounterCorrupted, StorageUnavailable
from core.models import DocumentKind
from core.services.numbering import get_number_generator


def _error(message: str, status: int) -> JsonResponse:
    return JsonResponse({"error": message}, status=status)


@login_required
@require_POST
def next_document_number(request, kind: str):
    """
    POST /core/numbers/<kind>/

    Response:
    {
      "kind": "sale",
      "number": "VT25070043"
    }
    """
    if kind not in DocumentKind.values:
        return _error(f"Unknown document kind '{kind}'.", status=400)

    try:
        number = get_number_generator().next_number(kind)
    except CounterCorrupted as exc:
        return _error(str(exc), status=409)
    except StorageUnavailable as exc:
        return _error(str(exc), status=503)

    return JsonResponse({"kind": kind, "number": number})


@login_required
@require_GET
def document_counters(request):
    """
    GET /core/numbers/

    Last issued value per kind. A corrupted counter is reported as null.
    """
    generator = get_number_generator()
    results = []
    for kind in DocumentKind:
        try:
            last_value = generator.current_value(kind).last_value
        except CounterCorrupted:
            last_value = None
        except StorageUnavailable as exc:
            return _error(str(exc), status=503)
        results.append(
            {
                "kind": kind.value,
                "label": str(kind.label),
                "prefix": kind.prefix,
                "last_value": last_value,
            }
        )
    return JsonResponse({"results": results})
