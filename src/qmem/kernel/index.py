from __future__ import annotations

import bisect
import logging
from datetime import datetime
from typing import Iterable

from .schema import Receipt

logger = logging.getLogger(__name__)


class ReceiptIndex:
    """
    Derived lookup structure over a receipt log.

    Never the source of truth: it is rebuilt from the log whenever its
    provenance is uncertain (load, compaction) and is never persisted.
    """

    def __init__(self) -> None:
        self._by_operation: dict[str, list[str]] = {}
        self._by_agent: dict[str, list[str]] = {}
        self._by_time: list[tuple[datetime, str]] = []
        self._ids: set[str] = set()

    @classmethod
    def build(cls, receipts: Iterable[Receipt]) -> "ReceiptIndex":
        index = cls()
        count = 0
        for receipt in receipts:
            index.add(receipt)
            count += 1
        logger.debug("Rebuilt receipt index over %d receipts", count)
        return index

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, receipt_id: object) -> bool:
        return receipt_id in self._ids

    def add(self, receipt: Receipt) -> None:
        self._by_operation.setdefault(receipt.operation_key, []).append(receipt.receipt_id)
        self._by_agent.setdefault(receipt.owning_agent_id, []).append(receipt.receipt_id)
        bisect.insort(self._by_time, (receipt.created_at, receipt.receipt_id))
        self._ids.add(receipt.receipt_id)

    def has_operation(self, operation_key: str) -> bool:
        return operation_key in self._by_operation

    def for_operation(self, operation_key: str) -> tuple[str, ...]:
        return tuple(self._by_operation.get(operation_key, ()))

    def for_agent(self, owning_agent_id: str) -> tuple[str, ...]:
        return tuple(self._by_agent.get(owning_agent_id, ()))

    def operation_keys(self) -> list[str]:
        return sorted(self._by_operation)

    def between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[str, ...]:
        """Receipt ids with start <= created_at < end, oldest first."""
        lo = 0 if start is None else bisect.bisect_left(self._by_time, (start, ""))
        hi = len(self._by_time) if end is None else bisect.bisect_left(self._by_time, (end, ""))
        return tuple(receipt_id for _, receipt_id in self._by_time[lo:hi])

    def oldest(self) -> tuple[datetime, str] | None:
        return self._by_time[0] if self._by_time else None

    def newest(self) -> tuple[datetime, str] | None:
        return self._by_time[-1] if self._by_time else None
