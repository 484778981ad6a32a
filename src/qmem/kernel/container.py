"""
Container: the persistent unit of agent memory.

A container owns one header, an append-only receipt log, a prunable state
snapshot log, the coordinate dictionary, and a derived receipt index.

Mutations run under the writer side of a reader/writer lock; queries run
under the reader side. The header's content hash is recomputed inside every
mutation, so it is correct before any save or verify can observe it.

Receipt hooks fire after the write lock is released:

    container.add_receipt_hook(lambda receipt: print(receipt.operation_key))
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from ..errors import DuplicateReceiptId, DuplicateStateId, ValidationError
from .hasher import ContentHasher
from .index import ReceiptIndex
from .locking import ReadWriteLock
from .schema import (
    ContainerStats,
    CoordinateDictionaryEntry,
    Header,
    Receipt,
    StateSnapshot,
    _as_utc,
    split_operation_key,
    utc_now,
    validate_operation_key,
)

if TYPE_CHECKING:
    from ..retention import CompactionReport

logger = logging.getLogger(__name__)

# Signature: (receipt) -> None, called after the receipt is appended
ReceiptHook = Callable[[Receipt], None]


class Container:
    def __init__(
        self,
        header: Header,
        receipts: Iterable[Receipt] = (),
        snapshots: Iterable[StateSnapshot] = (),
        coordinates: Iterable[CoordinateDictionaryEntry] = (),
        hasher: ContentHasher | None = None,
    ) -> None:
        """
        Assemble a container from existing parts.

        The header is taken as given; it is not recomputed here so a loader
        can compare it against ``compute_content_hash()``. Use ``create`` for
        a new, empty container.

        Raises:
            DuplicateReceiptId: If two receipts share an id
            DuplicateStateId: If two snapshots share an id
        """
        self._hasher = hasher or ContentHasher.for_tagged(header.content_hash)
        self._header = header
        self._lock = ReadWriteLock()
        self._on_receipt_added: list[ReceiptHook] = []

        self._receipts: list[Receipt] = []
        self._receipt_by_id: dict[str, Receipt] = {}
        self._receipt_fold = self._hasher.start_fold()
        self._receipt_bytes = 0
        for receipt in receipts:
            if receipt.receipt_id in self._receipt_by_id:
                raise DuplicateReceiptId(receipt.receipt_id)
            self._append_receipt(receipt)

        self._snapshots: list[StateSnapshot] = []
        self._state_ids: set[str] = set()
        for snapshot in snapshots:
            if snapshot.state_id in self._state_ids:
                raise DuplicateStateId(snapshot.state_id)
            self._snapshots.append(snapshot)
            self._state_ids.add(snapshot.state_id)

        self._coordinates: dict[str, CoordinateDictionaryEntry] = {
            entry.operation_prefix: entry for entry in coordinates
        }
        self._index = ReceiptIndex.build(self._receipts)

    @classmethod
    def create(
        cls,
        owning_agent_id: str,
        trace_id: str,
        hasher: ContentHasher | None = None,
        container_id: str | None = None,
    ) -> "Container":
        """Create an empty container at the start of a trace."""
        hasher = hasher or ContentHasher()
        now = utc_now()
        header = Header(
            container_id=container_id or f"qmem-{uuid.uuid4()}",
            owning_agent_id=owning_agent_id,
            trace_id=trace_id,
            created_at=now,
            last_modified_at=now,
            content_hash=hasher.fold([]),
        )
        logger.debug("Created container %s for trace %s", header.container_id, trace_id)
        return cls(header, hasher=hasher)

    # ------------------------------------------------------------------ #
    # Identity

    @property
    def header(self) -> Header:
        return self._header

    @property
    def container_id(self) -> str:
        return self._header.container_id

    @property
    def trace_id(self) -> str:
        return self._header.trace_id

    @property
    def owning_agent_id(self) -> str:
        return self._header.owning_agent_id

    @property
    def hasher(self) -> ContentHasher:
        return self._hasher

    # ------------------------------------------------------------------ #
    # Hooks

    def add_receipt_hook(self, callback: ReceiptHook) -> None:
        """Register a callback fired after each receipt append."""
        self._on_receipt_added.append(callback)

    def remove_receipt_hook(self, callback: ReceiptHook) -> None:
        self._on_receipt_added.remove(callback)

    def _fire_receipt_hooks(self, receipt: Receipt) -> None:
        # Hooks observe; a failing one must not undo or block the append.
        for hook in list(self._on_receipt_added):
            try:
                hook(receipt)
            except Exception:
                logger.exception(
                    "Receipt hook %r failed for %s in %s",
                    hook,
                    receipt.receipt_id,
                    self.container_id,
                )

    # ------------------------------------------------------------------ #
    # Internal bookkeeping (caller holds the write lock, or is __init__)

    def _append_receipt(self, receipt: Receipt) -> None:
        self._receipts.append(receipt)
        self._receipt_by_id[receipt.receipt_id] = receipt
        self._hasher.absorb(self._receipt_fold, receipt.record_hash)
        self._receipt_bytes += len(self._hasher.canonical_bytes(receipt))

    def _snapshot_bytes(self) -> int:
        return sum(len(self._hasher.canonical_bytes(s)) for s in self._snapshots)

    def _content_hash(self) -> str:
        fold = self._receipt_fold.copy()
        for snapshot in self._snapshots:
            self._hasher.absorb(fold, snapshot.record_hash)
        return self._hasher.finish(fold)

    def _refresh_header(self, content_changed: bool = True) -> None:
        update: dict = {"last_modified_at": utc_now()}
        if content_changed:
            update.update(
                entry_count=len(self._receipts) + len(self._snapshots),
                total_byte_size=self._receipt_bytes + self._snapshot_bytes(),
                content_hash=self._content_hash(),
                # A signature only covers the digest it was made over
                signature=None,
                signer_key=None,
            )
        self._header = self._header.model_copy(update=update)

    # ------------------------------------------------------------------ #
    # Receipts

    def add_receipt(self, receipt: Receipt) -> None:
        """
        Append a receipt and index it.

        Raises:
            InvalidOperationKey: If the receipt's operation key is malformed
            ValidationError: If the receipt's record hash does not match its content
            DuplicateReceiptId: If a receipt with the same id already exists
        """
        validate_operation_key(receipt.operation_key)
        expected = self._hasher.record_digest(receipt)
        if receipt.record_hash != expected:
            raise ValidationError(
                f"Receipt {receipt.receipt_id} record_hash does not match its content "
                f"under {self._hasher.algorithm}"
            )

        with self._lock.write():
            if receipt.receipt_id in self._receipt_by_id:
                raise DuplicateReceiptId(receipt.receipt_id)
            self._append_receipt(receipt)
            self._index.add(receipt)
            self._refresh_header()

        logger.debug(
            "Appended receipt %s for %s (success=%s) to %s",
            receipt.receipt_id,
            receipt.operation_key,
            receipt.success,
            self.container_id,
        )
        self._fire_receipt_hooks(receipt)

    def has_receipt(self, operation_key: str) -> bool:
        with self._lock.read():
            return self._index.has_operation(operation_key)

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        with self._lock.read():
            return self._receipt_by_id.get(receipt_id)

    def query_receipts(self, operation_key: str) -> tuple[Receipt, ...]:
        """All receipts for an operation key, in append order."""
        with self._lock.read():
            return tuple(self._receipt_by_id[rid] for rid in self._index.for_operation(operation_key))

    def latest_receipt(self, operation_key: str) -> Optional[Receipt]:
        """
        The receipt with the greatest created_at for this key.

        Ties on created_at go to the lexically greatest receipt_id.
        """
        matches = self.query_receipts(operation_key)
        if not matches:
            return None
        return max(matches, key=lambda r: (r.created_at, r.receipt_id))

    def receipts_by_agent(self, owning_agent_id: str) -> tuple[Receipt, ...]:
        with self._lock.read():
            return tuple(self._receipt_by_id[rid] for rid in self._index.for_agent(owning_agent_id))

    def receipts_between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[Receipt, ...]:
        """Receipts with start <= created_at < end, oldest first. Naive bounds are UTC."""
        start = _as_utc(start) if start is not None else None
        end = _as_utc(end) if end is not None else None
        with self._lock.read():
            return tuple(self._receipt_by_id[rid] for rid in self._index.between(start, end))

    def operation_keys(self) -> list[str]:
        with self._lock.read():
            return self._index.operation_keys()

    def verify_receipt(self, receipt_id: str) -> bool:
        """Recompute a receipt's hash and compare it with the stored one."""
        receipt = self.get_receipt(receipt_id)
        if receipt is None:
            return False
        return self._hasher.record_digest(receipt) == receipt.record_hash

    @property
    def receipts(self) -> tuple[Receipt, ...]:
        with self._lock.read():
            return tuple(self._receipts)

    # ------------------------------------------------------------------ #
    # State snapshots

    def add_state_snapshot(self, snapshot: StateSnapshot) -> None:
        """
        Append a state snapshot.

        Raises:
            ValidationError: If the snapshot's record hash does not match its content
            DuplicateStateId: If a snapshot with the same id already exists
        """
        if snapshot.record_hash != self._hasher.record_digest(snapshot):
            raise ValidationError(
                f"State snapshot {snapshot.state_id} record_hash does not match its content"
            )
        with self._lock.write():
            if snapshot.state_id in self._state_ids:
                raise DuplicateStateId(snapshot.state_id)
            self._snapshots.append(snapshot)
            self._state_ids.add(snapshot.state_id)
            self._refresh_header()
        logger.debug("Appended state snapshot %s to %s", snapshot.state_id, self.container_id)

    def retain_snapshots(self, retain_count: int) -> list[StateSnapshot]:
        """
        Keep only the last ``retain_count`` snapshots in log order.

        Receipts are untouched. The index is rebuilt and the header updated.
        Returns the pruned snapshots, oldest first.
        """
        if retain_count < 0:
            raise ValidationError(f"retain_count must be >= 0, got {retain_count}")
        with self._lock.write():
            cut = max(len(self._snapshots) - retain_count, 0)
            pruned = self._snapshots[:cut]
            self._snapshots = self._snapshots[cut:]
            self._state_ids = {s.state_id for s in self._snapshots}
            self._index = ReceiptIndex.build(self._receipts)
            self._refresh_header(content_changed=bool(pruned))
        return pruned

    def compact(self, retain_count: int) -> "CompactionReport":
        from ..retention import RetentionPolicy

        return RetentionPolicy(retain_count=retain_count).compact(self)

    @property
    def snapshots(self) -> tuple[StateSnapshot, ...]:
        with self._lock.read():
            return tuple(self._snapshots)

    def latest_snapshot(self) -> Optional[StateSnapshot]:
        with self._lock.read():
            return self._snapshots[-1] if self._snapshots else None

    # ------------------------------------------------------------------ #
    # Coordinate dictionary

    def record_usage(
        self,
        operation_key: str,
        token_cost: int,
        used_at: datetime | None = None,
        executor: str | None = None,
    ) -> CoordinateDictionaryEntry:
        """
        Fold one use of an operation into the coordinate dictionary.

        The first use of a prefix creates its entry with ``executor`` (or
        the container's owning agent) as preferred executor; later uses
        only replace it when an executor is given explicitly.
        """
        validate_operation_key(operation_key)
        used_at = used_at or utc_now()
        _, _, prefix = split_operation_key(operation_key)
        with self._lock.write():
            entry = self._coordinates.get(prefix)
            if entry is None:
                entry = CoordinateDictionaryEntry.for_operation(
                    operation_key, used_at, executor=executor or self.owning_agent_id
                )
                self._coordinates[prefix] = entry
            entry.record_use(token_cost, used_at, executor=executor)
            self._refresh_header(content_changed=False)
            return entry.model_copy()

    def get_coordinate(self, operation_prefix: str) -> Optional[CoordinateDictionaryEntry]:
        with self._lock.read():
            entry = self._coordinates.get(operation_prefix)
            return entry.model_copy() if entry is not None else None

    @property
    def coordinates(self) -> tuple[CoordinateDictionaryEntry, ...]:
        with self._lock.read():
            return tuple(entry.model_copy() for entry in self._coordinates.values())

    # ------------------------------------------------------------------ #
    # Integrity and maintenance

    def compute_content_hash(self) -> str:
        """Fold the current logs; compare with ``header.content_hash`` to verify."""
        with self._lock.read():
            return self._content_hash()

    def reindex(self) -> None:
        """Discard the index and rebuild it from the receipt log."""
        with self._lock.write():
            self._index = ReceiptIndex.build(self._receipts)

    def apply_signature(self, signature: str, signer_key: str) -> None:
        with self._lock.write():
            self._header = self._header.model_copy(
                update={"signature": signature, "signer_key": signer_key}
            )

    def export_state(
        self,
    ) -> tuple[
        Header,
        tuple[Receipt, ...],
        tuple[StateSnapshot, ...],
        tuple[CoordinateDictionaryEntry, ...],
    ]:
        """One consistent view of everything that gets persisted."""
        with self._lock.read():
            return (
                self._header,
                tuple(self._receipts),
                tuple(self._snapshots),
                tuple(entry.model_copy() for entry in self._coordinates.values()),
            )

    def stats(self) -> ContainerStats:
        with self._lock.read():
            receipts = self._receipts
            oldest = self._index.oldest()
            newest = self._index.newest()
            successes = sum(1 for r in receipts if r.success)
            mean_cost = sum(r.token_cost for r in receipts) / len(receipts) if receipts else 0.0
            return ContainerStats(
                receipt_count=len(receipts),
                state_count=len(self._snapshots),
                coordinate_count=len(self._coordinates),
                total_byte_size=self._header.total_byte_size,
                oldest_receipt_at=oldest[0] if oldest else None,
                newest_receipt_at=newest[0] if newest else None,
                mean_token_cost=mean_cost,
                success_count=successes,
                failure_count=len(receipts) - successes,
            )

    def __repr__(self) -> str:
        return (
            f"Container(id={self.container_id!r}, trace={self.trace_id!r}, "
            f"receipts={len(self._receipts)}, snapshots={len(self._snapshots)})"
        )
