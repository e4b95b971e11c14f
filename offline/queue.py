"""
Offline operation queue.

Writes that cannot reach the backend are buffered here, persisted through
LocalStorage under "pending_operations", and replayed when connectivity
comes back.

States:
    ONLINE_IDLE        --went offline-->            OFFLINE_BUFFERING
    OFFLINE_BUFFERING  --went online, queue empty--> ONLINE_IDLE
    OFFLINE_BUFFERING  --went online, queue full-->  SYNCING (drain starts)
    SYNCING            --pass finished-->            ONLINE_IDLE
    SYNCING            --went offline-->             OFFLINE_BUFFERING

A drain makes one attempt per entry. Failed entries are kept, with no retry
limit and no backoff. The next online transition (or a manual drain) tries
them again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from django.db import models
from django.utils.translation import gettext_lazy as _

from core.exceptions import ReplayFailed
from core.services.storage import LocalStorage

from .backends import RecordBackend
from .connectivity import Connectivity
from .domain import (
    CreateRecord,
    DeleteRecord,
    Operation,
    QueueDrained,
    UpdateRecord,
    WentOffline,
    WentOnline,
    operation_from_payload,
)

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_operations"


class QueueState(models.TextChoices):
    ONLINE_IDLE = "online_idle", _("En ligne")
    OFFLINE_BUFFERING = "offline_buffering", _("Hors ligne, mise en attente")
    SYNCING = "syncing", _("Synchronisation")


@dataclass(frozen=True)
class DrainResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class OfflineQueue:
    """
    The persisted list under "pending_operations" is the only copy of the
    queue. Every change is one LocalStorage.update_local() call, so queues
    in other processes sharing the store (web, sync_pending,
    watch_connectivity) always work on the current list.

    Operations being replayed stay persisted until the end of the pass: a
    crash mid-pass loses nothing but may replay some of them again.
    """

    def __init__(
        self,
        storage: LocalStorage,
        backend: RecordBackend,
        connectivity: Connectivity,
    ) -> None:
        self.storage = storage
        self.backend = backend
        self.connectivity = connectivity
        self.dispatcher = connectivity.dispatcher

        # _lock protège _state.
        # _drain_lock garantit une seule passe de synchronisation à la fois.
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()

        restored = self.pending()
        if restored:
            logger.info("Restored %d pending operation(s)", len(restored))

        self._state = (
            QueueState.ONLINE_IDLE
            if connectivity.is_online
            else QueueState.OFFLINE_BUFFERING
        )

        self.dispatcher.subscribe(WentOnline, self._on_went_online)
        self.dispatcher.subscribe(WentOffline, self._on_went_offline)

    def __repr__(self) -> str:
        return f"<OfflineQueue state={self._state}>"

    def __len__(self) -> int:
        return len(self.pending())

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def is_online(self) -> bool:
        """
        Connectivity as last observed by this process.
        """
        return self.connectivity.is_online

    def pending(self) -> List[Operation]:
        """
        Every queued operation, in replay order, read from the store.
        """
        return self._decode(self.storage.load_local(PENDING_KEY))

    # ------------------------------------------------------------------
    # Local persistence
    # ------------------------------------------------------------------
    def save_local(self, key: str, value: Any) -> None:
        self.storage.save_local(key, value)

    def load_local(self, key: str) -> Any:
        return self.storage.load_local(key)

    def _decode(self, payloads: Any) -> List[Operation]:
        if payloads is None:
            return []
        if not isinstance(payloads, list):
            logger.warning("Persisted pending operations are not a list, ignoring them")
            return []

        operations: List[Operation] = []
        for payload in payloads:
            try:
                operations.append(operation_from_payload(payload))
            except ValueError as exc:
                logger.warning("Dropping unreadable pending operation %r: %s", payload, exc)
        return operations

    def _change(self, func: Callable[[List[Operation]], List[Operation]]) -> List[Operation]:
        """
        Atomically replace the persisted queue by func(persisted queue).
        Nothing changes when the store fails.
        """

        def apply(payloads: Any) -> List[Dict[str, Any]]:
            return [op.to_payload() for op in func(self._decode(payloads))]

        return self._decode(self.storage.update_local(PENDING_KEY, apply))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------
    def enqueue(self, operation: Union[Operation, Dict[str, Any]]) -> Operation:
        """
        Append an operation at the tail of the queue and persist the queue.
        Does not try to replay it.
        """
        if isinstance(operation, dict):
            operation = operation_from_payload(operation)
        if not isinstance(operation, (CreateRecord, UpdateRecord, DeleteRecord)):
            raise TypeError(f"Cannot enqueue {type(operation).__name__}")

        self._change(lambda operations: operations + [operation])

        logger.debug("Queued %s on %s", operation.kind, operation.table)
        return operation

    # ------------------------------------------------------------------
    # Connectivity transitions
    # ------------------------------------------------------------------
    def _on_went_offline(self, event: WentOffline) -> None:
        with self._lock:
            self._state = QueueState.OFFLINE_BUFFERING

    def _on_went_online(self, event: WentOnline) -> None:
        with self._lock:
            self._state = QueueState.SYNCING
        self.drain()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------
    def _replay(self, operation: Operation) -> None:
        if isinstance(operation, CreateRecord):
            self.backend.insert(operation.table, operation.values)
        elif isinstance(operation, UpdateRecord):
            self.backend.update(operation.table, operation.record_id, operation.values)
        elif isinstance(operation, DeleteRecord):
            self.backend.delete(operation.table, operation.record_id)
        else:
            raise TypeError(f"Unsupported operation {type(operation).__name__}")

    def drain(self) -> DrainResult:
        """
        Replay every queued operation once, head to tail.

        - Success removes the operation.
        - Failure is logged and the operation is queued again, after the
          other retries of this pass.
        - If connectivity drops mid-pass, the operations not attempted yet
          stay queued.

        Whatever happens, the state leaves SYNCING when the pass ends.
        """
        if not self.connectivity.is_online:
            logger.debug("Drain skipped: offline")
            return DrainResult(remaining=len(self))

        if not self._drain_lock.acquire(blocking=False):
            logger.info("Drain already running, skipping")
            return DrainResult(remaining=len(self))

        try:
            result = self._drain_pass()
        finally:
            with self._lock:
                if self.connectivity.is_online:
                    self._state = QueueState.ONLINE_IDLE
                else:
                    self._state = QueueState.OFFLINE_BUFFERING
            self._drain_lock.release()

        if result is None:
            return DrainResult()

        logger.info(
            "Sync finished: %d attempted, %d succeeded, %d failed, %d remaining",
            result.attempted,
            result.succeeded,
            result.failed,
            result.remaining,
        )
        self.dispatcher.emit(QueueDrained(**result.as_dict()))
        return result

    def _drain_pass(self) -> Optional[DrainResult]:
        batch = self.pending()
        if not batch:
            return None

        with self._lock:
            self._state = QueueState.SYNCING
        logger.info("Syncing %d pending operation(s)", len(batch))

        retries: List[Operation] = []
        attempted = 0
        for operation in batch:
            if not self.connectivity.is_online:
                logger.info(
                    "Connectivity lost during sync, %d operation(s) left untouched",
                    len(batch) - attempted,
                )
                break

            attempted += 1
            try:
                self._replay(operation)
            except ReplayFailed as exc:
                logger.warning(
                    "Replay of %s on %s failed, keeping it queued: %s",
                    operation.kind,
                    operation.table,
                    exc,
                )
                retries.append(operation)
            except Exception:
                logger.exception(
                    "Unexpected error replaying %s on %s, keeping it queued",
                    operation.kind,
                    operation.table,
                )
                retries.append(operation)

        unattempted = batch[attempted:]

        # Enqueued during the pass → after retries and untouched ones
        remaining = self._change(
            lambda persisted: retries + unattempted + _without(persisted, batch)
        )
        return DrainResult(
            attempted=attempted,
            succeeded=attempted - len(retries),
            failed=len(retries),
            remaining=len(remaining),
        )


def _without(operations: List[Operation], handled: List[Operation]) -> List[Operation]:
    """
    `operations` minus one occurrence of each operation in `handled`.
    """
    left = list(handled)
    kept: List[Operation] = []
    for operation in operations:
        if operation in left:
            left.remove(operation)
        else:
            kept.append(operation)
    return kept
