# offline/services.py

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from django.conf import settings

from core.domain.dispatcher import DomainEventDispatcher
from core.services.storage import KeyValueStore, LocalStorage, get_default_store

from .backends import RecordBackend, get_default_backend
from .connectivity import Connectivity, HttpProbe, Probe
from .queue import OfflineQueue

logger = logging.getLogger(__name__)


def get_default_probe() -> Optional[HttpProbe]:
    """
    HTTP probe on settings.CONNECTIVITY_PROBE_URL, or None when not configured.
    """
    url = getattr(settings, "CONNECTIVITY_PROBE_URL", "")
    if not url:
        return None
    return HttpProbe(url, timeout=getattr(settings, "CONNECTIVITY_PROBE_TIMEOUT", 3.0))


def build_offline_queue(
    *,
    store: Optional[KeyValueStore] = None,
    backend: Optional[RecordBackend] = None,
    dispatcher: Optional[DomainEventDispatcher] = None,
    probe: Optional[Probe] = None,
    initially_online: Optional[bool] = None,
) -> OfflineQueue:
    """
    Wire storage, connectivity and backend into an OfflineQueue.

    The initial connectivity comes from (first match wins):
    - initially_online, when given
    - the probe (argument, else settings.CONNECTIVITY_PROBE_URL)
    - settings.OFFLINE_ASSUME_ONLINE
    """
    storage = LocalStorage(store if store is not None else get_default_store())
    dispatcher = dispatcher or DomainEventDispatcher()

    if initially_online is None:
        probe = probe or get_default_probe()
        if probe is not None:
            initially_online = bool(probe())
        else:
            initially_online = getattr(settings, "OFFLINE_ASSUME_ONLINE", True)

    connectivity = Connectivity(dispatcher, initially_online=initially_online)
    if backend is None:
        backend = get_default_backend(storage)

    queue = OfflineQueue(storage, backend, connectivity)
    logger.debug("Built %r", queue)
    return queue


@lru_cache(maxsize=1)
def get_offline_queue() -> OfflineQueue:
    """
    The queue of this process, built once from settings.
    """
    return build_offline_queue()
