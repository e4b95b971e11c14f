# core/services/collections.py

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable, Optional

from core.services.storage import LocalStorage

logger = logging.getLogger(__name__)

# Collections available to screens working without the remote backend
DEFAULT_COLLECTIONS = (
    "products",
    "invoices",
    "quotes",
    "employees",
    "sales",
    "deliveries",
    "production_orders",
    "clients",
)

# Réservé à la file d'attente hors ligne
RESERVED_NAMES = frozenset({"pending_operations"})

Record = dict[str, Any]


class LocalCollection:
    """
    A list of records (dicts with an "id") saved under one local key.

    Usage:
        sales = LocalCollection(storage, "sales")
        sales.create({"customer_name": "Kossi", "total_amount": 125000})
        sales.read_all()
    """

    def __init__(self, storage: LocalStorage, name: str) -> None:
        if not name:
            raise ValueError("Collection name is required.")
        if name in RESERVED_NAMES:
            raise ValueError(f"'{name}' is reserved and cannot be used as a collection.")
        self.storage = storage
        self.name = name

    def __repr__(self) -> str:
        return f"<LocalCollection {self.name}>"

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------
    def read_all(self) -> list[Record]:
        data = self.storage.load_local(self.name)
        if data is None:
            return []
        if not isinstance(data, list):
            logger.warning("Collection %s is not a list, treating it as empty", self.name)
            return []
        return data

    def get(self, record_id: str) -> Optional[Record]:
        for item in self.read_all():
            if item.get("id") == record_id:
                return item
        return None

    # ------------------------------------------------------------------
    # Écriture
    # ------------------------------------------------------------------
    def _save(self, records: list[Record]) -> None:
        self.storage.save_local(self.name, records)

    def create(self, item: Record) -> Record:
        """
        Append a record. An "id" (UUID) is assigned when missing.
        """
        record = dict(item)
        record_id = record.get("id") or str(uuid.uuid4())
        record["id"] = str(record_id)

        records = self.read_all()
        if any(r.get("id") == record["id"] for r in records):
            raise ValueError(f"Record '{record['id']}' already exists in {self.name}.")

        records.append(record)
        self._save(records)
        return record

    def update(self, item: Record) -> bool:
        """
        Replace the record with the same id.
        Returns False (and writes nothing) when the id is unknown.
        """
        record_id = item.get("id")
        if not record_id:
            raise ValueError("Cannot update a record without an id.")

        records = self.read_all()
        for index, existing in enumerate(records):
            if existing.get("id") == record_id:
                records[index] = dict(item)
                self._save(records)
                return True
        return False

    def delete(self, record_id: str) -> bool:
        records = self.read_all()
        kept = [r for r in records if r.get("id") != record_id]
        if len(kept) == len(records):
            return False
        self._save(kept)
        return True

    def clear(self) -> None:
        self._save([])


def init_collections(
    storage: LocalStorage,
    names: Iterable[str] = DEFAULT_COLLECTIONS,
) -> list[str]:
    """
    Create empty collections that don't exist yet.
    Returns the names that were created.
    """
    created = []
    for name in names:
        if storage.load_local(name) is None:
            LocalCollection(storage, name).clear()
            created.append(name)
    if created:
        logger.info("Initialized local collections: %s", ", ".join(created))
    return created
