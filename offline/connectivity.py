"""
Connectivity state and the background probe that feeds it.

- Connectivity holds the single online/offline flag and emits
  WentOnline / WentOffline on the dispatcher it was built with, only when
  the flag actually changes.
- HttpProbe answers "can we reach the backend right now?".
- ConnectivityMonitor polls a probe from a daemon thread and pushes the
  result into Connectivity.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import requests

from core.domain.dispatcher import DomainEventDispatcher

from .domain import WentOffline, WentOnline

logger = logging.getLogger(__name__)

Probe = Callable[[], bool]


class Connectivity:
    def __init__(self, dispatcher: DomainEventDispatcher, initially_online: bool = True) -> None:
        self.dispatcher = dispatcher
        self._online = bool(initially_online)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Connectivity online={self._online}>"

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """
        Record the current status. Returns True if this was a transition.
        """
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online

        logger.info("Connectivity changed: %s", "online" if online else "offline")
        # Émis hors du verrou : les handlers peuvent relire l'état
        self.dispatcher.emit(WentOnline() if online else WentOffline())
        return True

    def went_online(self) -> bool:
        return self.set_online(True)

    def went_offline(self) -> bool:
        return self.set_online(False)


class HttpProbe:
    """
    Any HTTP answer from `url` (even an error status) means the network is up.
    """

    def __init__(self, url: str, timeout: float = 3.0, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self) -> bool:
        try:
            self.session.head(self.url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as exc:
            logger.debug("Probe %s failed: %s", self.url, exc)
            return False
        return True


class ConnectivityMonitor:
    def __init__(self, connectivity: Connectivity, probe: Probe, interval: float = 30.0) -> None:
        self.connectivity = connectivity
        self.probe = probe
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="connectivity-monitor", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def check_once(self) -> bool:
        """
        Probe once and update the connectivity flag. Returns the probed status.
        """
        try:
            online = bool(self.probe())
        except Exception:
            logger.exception("Connectivity probe raised, assuming offline")
            online = False
        self.connectivity.set_online(online)
        return online

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.check_once()
            self._stop.wait(self.interval)
