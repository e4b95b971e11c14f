# core/services/storage.py

from __future__ import annotations

import json
import logging
import math
import threading
from typing import Any, Callable, Iterable, Optional, Protocol

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from core.exceptions import StorageUnavailable
from core.models import LocalEntry

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "cornerstone_"

Updater = Callable[[Any], Any]


class KeyValueStore(Protocol):
    """
    Durable key/value store contract.

    Keys are plain strings, values are JSON-serializable structures.
    `get` returns None when the key is absent.

    `update(key, func)` replaces the value by func(current value) as one
    atomic step and returns the new value. If func raises, nothing is
    written.
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def update(self, key: str, func: Updater) -> Any: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


# ============================================================
# Implementations
# ============================================================

class DatabaseStore:
    """
    Key/value store persisted in the `core_localentry` table.

    Every database failure is re-raised as StorageUnavailable so callers
    only deal with one error type.
    """

    def get(self, key: str) -> Any:
        try:
            return (
                LocalEntry.objects.filter(key=key)
                .values_list("value", flat=True)
                .first()
            )
        except DatabaseError as exc:
            raise StorageUnavailable(f"Cannot read '{key}' from local store") from exc

    def set(self, key: str, value: Any) -> None:
        try:
            LocalEntry.objects.update_or_create(key=key, defaults={"value": value})
        except DatabaseError as exc:
            raise StorageUnavailable(f"Cannot write '{key}' to local store") from exc

    def update(self, key: str, func: Updater) -> Any:
        """
        Row-locked read-modify-write, safe across processes sharing the
        database.
        """
        try:
            with transaction.atomic():
                entry, _created = LocalEntry.objects.select_for_update().get_or_create(
                    key=key,
                    defaults={"value": None},
                )
                entry.value = func(entry.value)
                entry.save(update_fields=["value", "saved_at"])
                return entry.value
        except DatabaseError as exc:
            raise StorageUnavailable(f"Cannot update '{key}' in local store") from exc

    def delete(self, key: str) -> None:
        try:
            LocalEntry.objects.filter(key=key).delete()
        except DatabaseError as exc:
            raise StorageUnavailable(f"Cannot delete '{key}' from local store") from exc

    def keys(self, prefix: str = "") -> list[str]:
        try:
            qs = LocalEntry.objects.all()
            if prefix:
                qs = qs.filter(key__startswith=prefix)
            return list(qs.values_list("key", flat=True))
        except DatabaseError as exc:
            raise StorageUnavailable("Cannot list local store keys") from exc


class MemoryStore:
    """
    Process-local store. Values go through JSON on write so the store
    never shares mutable objects with its callers, like a real backend.
    """

    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = raw

    def update(self, key: str, func: Updater) -> Any:
        # func must not call back into this store
        with self._lock:
            raw = self._data.get(key)
            value = func(None if raw is None else json.loads(raw))
            self._data[key] = json.dumps(value)
        return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


def get_default_store() -> KeyValueStore:
    """
    Build the store selected by settings.LOCAL_STORAGE_BACKEND.
    """
    backend = getattr(settings, "LOCAL_STORAGE_BACKEND", "database")
    if backend == "database":
        return DatabaseStore()
    if backend == "memory":
        return MemoryStore()
    raise ValueError(
        f"Unknown LOCAL_STORAGE_BACKEND '{backend}'. "
        f"Allowed values: ['database', 'memory']"
    )


# ============================================================
# Namespaced, timestamped persistence
# ============================================================

def ensure_json_value(value: Any, path: str = "value") -> None:
    """
    Raise TypeError unless `value` comes back equal after a JSON round trip:
    None, bool, int, finite float, str, lists and dicts with string keys.
    Tuples and non-string keys are refused since JSON would turn them into
    lists and strings.
    """
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError(f"{path} is not a finite number: {value!r}")
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            ensure_json_value(item, f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path} has a non-string key {key!r}")
            ensure_json_value(item, f"{path}[{key!r}]")
        return
    raise TypeError(f"{path} is not JSON-serializable: {type(value).__name__}")


class LocalStorage:
    """
    Namespaced persistence on top of a KeyValueStore.

    save_local() wraps the value with the moment it was captured:

        {"data": <value>, "timestamp": "2025-07-14T09:30:00+00:00"}

    load_local() only returns <value>. The timestamp is informational,
    there is no expiry.
    """

    def __init__(self, store: KeyValueStore, namespace: Optional[str] = None) -> None:
        self.store = store
        if namespace is None:
            namespace = getattr(settings, "LOCAL_STORAGE_NAMESPACE", DEFAULT_NAMESPACE)
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _wrap(self, value: Any) -> dict[str, Any]:
        ensure_json_value(value)
        return {
            "data": value,
            "timestamp": timezone.now().isoformat(),
        }

    def _unwrap(self, full_key: str, envelope: Any) -> Any:
        if envelope is None:
            return None
        if not isinstance(envelope, dict) or "data" not in envelope:
            logger.warning("Ignoring malformed local entry %s", full_key)
            return None
        return envelope["data"]

    def save_local(self, key: str, value: Any) -> None:
        self.store.set(self._key(key), self._wrap(value))

    def load_local(self, key: str) -> Any:
        full_key = self._key(key)
        return self._unwrap(full_key, self.store.get(full_key))

    def update_local(self, key: str, func: Updater) -> Any:
        """
        Atomic load → func → save of one key. func gets the current value
        (None when absent) and returns the value to save, which is returned.
        """
        full_key = self._key(key)

        def apply(envelope: Any) -> dict[str, Any]:
            return self._wrap(func(self._unwrap(full_key, envelope)))

        return self._unwrap(full_key, self.store.update(full_key, apply))

    def saved_at(self, key: str) -> Optional[str]:
        envelope = self.store.get(self._key(key))
        if isinstance(envelope, dict):
            return envelope.get("timestamp")
        return None

    def local_keys(self) -> Iterable[str]:
        """
        Keys saved through this instance, without the namespace.
        """
        size = len(self.namespace)
        return [k[size:] for k in self.store.keys(self.namespace)]

    def clear_local_data(self) -> int:
        """
        Remove every key under the namespace. Returns how many were removed.
        Counters live outside the namespace and are kept.
        """
        keys = self.store.keys(self.namespace)
        for key in keys:
            self.store.delete(key)
        logger.info("Cleared %d local entries under '%s'", len(keys), self.namespace)
        return len(keys)
