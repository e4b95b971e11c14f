# offline/backends.py

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import requests
from django.conf import settings

from core.exceptions import ReplayFailed
from core.services.collections import LocalCollection
from core.services.storage import LocalStorage

logger = logging.getLogger(__name__)


class RecordBackend(Protocol):
    """
    Where queued operations are replayed: a request/response API addressed
    by table name. Implementations raise ReplayFailed when a write fails.
    """

    def insert(self, table: str, values: Dict[str, Any]) -> None: ...

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> None: ...

    def delete(self, table: str, record_id: str) -> None: ...


# ============================================================
# Local collections
# ============================================================

class LocalCollectionBackend:
    """
    Replays operations into the local collections (one per table).
    """

    def __init__(self, storage: LocalStorage) -> None:
        self.storage = storage

    def _collection(self, table: str) -> LocalCollection:
        try:
            return LocalCollection(self.storage, table)
        except ValueError as exc:
            raise ReplayFailed(str(exc)) from exc

    def insert(self, table: str, values: Dict[str, Any]) -> None:
        try:
            self._collection(table).create(values)
        except ValueError as exc:
            raise ReplayFailed(str(exc)) from exc

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> None:
        collection = self._collection(table)
        existing = collection.get(record_id)
        if existing is None:
            # Une mise à jour sur un id inconnu ne fait rien
            logger.debug("Update skipped, %s/%s not found", table, record_id)
            return
        collection.update({**existing, **values, "id": record_id})

    def delete(self, table: str, record_id: str) -> None:
        self._collection(table).delete(record_id)


# ============================================================
# Remote (PostgREST-style) backend
# ============================================================

class RestBackend:
    """
    Minimal client for a PostgREST-style API:

        POST   {base_url}/rest/v1/{table}
        PATCH  {base_url}/rest/v1/{table}?id=eq.{record_id}
        DELETE {base_url}/rest/v1/{table}?id=eq.{record_id}
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("RestBackend needs a base_url.")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, table: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(
                method,
                self._url(table),
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ReplayFailed(f"{method} {table} failed: {exc}") from exc
        return response

    def insert(self, table: str, values: Dict[str, Any]) -> None:
        self._request("POST", table, json=values)

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> None:
        self._request("PATCH", table, params={"id": f"eq.{record_id}"}, json=values)

    def delete(self, table: str, record_id: str) -> None:
        self._request("DELETE", table, params={"id": f"eq.{record_id}"})


def get_default_backend(storage: LocalStorage) -> RecordBackend:
    """
    Build the backend selected by settings.OFFLINE_BACKEND.
    """
    name = getattr(settings, "OFFLINE_BACKEND", "local")
    if name == "local":
        return LocalCollectionBackend(storage)
    if name == "rest":
        return RestBackend(
            settings.REMOTE_BACKEND_URL,
            settings.REMOTE_BACKEND_API_KEY,
            timeout=settings.REMOTE_BACKEND_TIMEOUT,
        )
    raise ValueError(
        f"Unknown OFFLINE_BACKEND '{name}'. "
        f"Allowed values: ['local', 'rest']"
    )
