# offline/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Union

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.domain.events import DomainEvent


# ============================================================
# Pending operations (what gets buffered while offline)
# ============================================================

@dataclass(frozen=True, kw_only=True)
class PendingOperation:
    """
    Base of the buffered write operations.

    Only the three concrete kinds below are ever queued; the queue
    dispatches on them explicitly.
    """
    table: str
    enqueued_at: datetime = field(default_factory=timezone.now)

    kind = ""

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "table": self.table,
            "enqueued_at": self.enqueued_at.isoformat(),
        }
        payload.update(self._payload_fields())
        return payload

    def _payload_fields(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True, kw_only=True)
class CreateRecord(PendingOperation):
    values: Dict[str, Any]

    kind = "create"

    def _payload_fields(self) -> Dict[str, Any]:
        return {"values": dict(self.values)}


@dataclass(frozen=True, kw_only=True)
class UpdateRecord(PendingOperation):
    record_id: str
    values: Dict[str, Any]

    kind = "update"

    def _payload_fields(self) -> Dict[str, Any]:
        return {"record_id": self.record_id, "values": dict(self.values)}


@dataclass(frozen=True, kw_only=True)
class DeleteRecord(PendingOperation):
    record_id: str

    kind = "delete"

    def _payload_fields(self) -> Dict[str, Any]:
        return {"record_id": self.record_id}


Operation = Union[CreateRecord, UpdateRecord, DeleteRecord]

OPERATION_TYPES = {
    CreateRecord.kind: CreateRecord,
    UpdateRecord.kind: UpdateRecord,
    DeleteRecord.kind: DeleteRecord,
}


def operation_from_payload(payload: Dict[str, Any]) -> Operation:
    """
    Rebuild an operation from its stored JSON payload.

    Raises ValueError on unknown kinds or missing fields.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Operation payload must be a dict, got {type(payload).__name__}")

    kind = payload.get("kind")
    op_type = OPERATION_TYPES.get(kind)
    if op_type is None:
        raise ValueError(
            f"Unknown operation kind '{kind}'. "
            f"Allowed values: {sorted(OPERATION_TYPES)}"
        )

    table = payload.get("table")
    if not table:
        raise ValueError("Operation payload has no table.")

    kwargs: Dict[str, Any] = {"table": table}

    enqueued_at = payload.get("enqueued_at")
    if enqueued_at:
        parsed = parse_datetime(enqueued_at)
        if parsed is None:
            raise ValueError(f"Invalid enqueued_at '{enqueued_at}'")
        kwargs["enqueued_at"] = parsed

    if op_type in (UpdateRecord, DeleteRecord):
        if not payload.get("record_id"):
            raise ValueError(f"'{kind}' operation needs a record_id.")
        kwargs["record_id"] = str(payload["record_id"])

    if op_type in (CreateRecord, UpdateRecord):
        values = payload.get("values")
        if not isinstance(values, dict):
            raise ValueError(f"'{kind}' operation needs a values dict.")
        kwargs["values"] = values

    return op_type(**kwargs)


# ============================================================
# Connectivity events
# ============================================================

@dataclass(frozen=True, kw_only=True)
class WentOnline(DomainEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class WentOffline(DomainEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class QueueDrained(DomainEvent):
    attempted: int
    succeeded: int
    failed: int
    remaining: int
