# core/services/numbering.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional

from django.utils import timezone

from core.exceptions import CounterCorrupted
from core.models import DocumentKind
from core.services.storage import KeyValueStore, get_default_store

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class Counter:
    """
    Read-only view of a document counter.
    """
    document_kind: DocumentKind
    last_value: int


def _coerce_kind(document_kind) -> DocumentKind:
    try:
        return DocumentKind(document_kind)
    except ValueError:
        raise ValueError(
            f"Unknown document kind '{document_kind}'. "
            f"Allowed values: {sorted(DocumentKind.values)}"
        ) from None


def _parse_counter(key: str, raw) -> int:
    """
    Turn a stored counter into an int.
    Absent → 0. Anything that is not a non-negative integer → CounterCorrupted.
    """
    if raw is None:
        return 0
    # bool est un int en Python, mais jamais un compteur valide
    if isinstance(raw, bool):
        raise CounterCorrupted(key, raw)
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and raw.strip().isascii() and raw.strip().isdigit():
        value = int(raw)
    else:
        raise CounterCorrupted(key, raw)
    if value < 0:
        raise CounterCorrupted(key, raw)
    return value


def format_document_number(prefix: str, value: int, now: datetime) -> str:
    """
    {prefix}{yy}{mm}{seq:04d}, e.g. ("VT", 43, July 2025) → "VT25070043".
    Sequences above 9999 simply widen the string.
    """
    return f"{prefix}{now:%y}{now:%m}{value:04d}"


class DocumentNumberGenerator:
    """
    Hands out human-friendly, strictly increasing document numbers.

    Usage:
        generator = DocumentNumberGenerator(store)
        sale.number = generator.next_number(DocumentKind.SALE)   # "VT25070043"

    The counter for each kind lives in the key/value store under
    DocumentKind.counter_key, as a decimal string.

    The increment is a single store.update() call: the database store runs
    it under a row lock, so generators in other threads or processes
    sharing the same table never hand out the same number.
    """

    def __init__(self, store: KeyValueStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or timezone.localtime

    def current_value(self, document_kind) -> Counter:
        kind = _coerce_kind(document_kind)
        raw = self.store.get(kind.counter_key)
        return Counter(document_kind=kind, last_value=_parse_counter(kind.counter_key, raw))

    def next_number(self, document_kind) -> str:
        """
        Increment the counter of the given kind, persist it and return the
        formatted number for the current month.

        Raises:
            ValueError: unknown document kind.
            CounterCorrupted: the stored counter is not a valid integer.
            StorageUnavailable: the store cannot be read or written.
        """
        kind = _coerce_kind(document_kind)
        key = kind.counter_key

        # Checked inside the locked step: a corrupted counter writes nothing
        stored = self.store.update(key, lambda raw: str(_parse_counter(key, raw) + 1))
        next_value = int(stored)

        number = format_document_number(kind.prefix, next_value, self.clock())
        logger.debug("Issued %s number %s", kind.value, number)
        return number

    def reset(self, document_kind, value: int = 0) -> Counter:
        """
        Out-of-band reset of a counter (management command only).
        """
        kind = _coerce_kind(document_kind)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError("Counter value must be a non-negative integer.")

        self.store.set(kind.counter_key, str(value))

        logger.warning("Counter %s reset to %d", kind.counter_key, value)
        return Counter(document_kind=kind, last_value=value)


@lru_cache(maxsize=1)
def get_number_generator() -> DocumentNumberGenerator:
    """
    Process-wide generator built from settings.
    """
    return DocumentNumberGenerator(get_default_store())
