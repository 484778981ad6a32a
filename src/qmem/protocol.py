"""
CoordinationProtocol: query before act.

Before doing a unit of work an agent asks its container whether the work is
already done. A successful receipt is the answer; the work is not repeated.
Otherwise the work runs once, its outcome becomes a new receipt, and the
container is persisted.

Flow:
    coordinate(key, work_fn)
        │
        ▼
    container.latest_receipt(key) ── success ──▶ cached payload
        │
        ▼ (none, or failed and retry allowed)
    work_fn(key) ──▶ Receipt ──▶ container.add_receipt ──▶ engine.save

Failures reported by work_fn, or raised from it as an Exception, are
recorded as failed receipts and returned, never raised. Cancellation
(a BaseException that is not an Exception) propagates and writes nothing.

At-most-once holds for one protocol instance over one container. Two
processes holding copies of the same file can both execute; the later save
wins. Serializing them is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, Optional, Union

from .config import Settings
from .errors import RedundantOperation, ValidationError, WriteFailure
from .kernel.container import Container
from .kernel.hasher import ContentHasher
from .kernel.persistence import PersistenceEngine, container_path
from .kernel.schema import Receipt, StateSnapshot, validate_operation_key
from .retention import CompactionReport, RetentionPolicy

logger = logging.getLogger(__name__)


@dataclass
class WorkOutcome:
    """What an external unit of work reports back."""
    success: bool
    payload: bytes = b""
    error: Optional[str] = None
    token_cost: int = 0
    latency: Optional[float] = None  # milliseconds; measured when None

    @classmethod
    def ok(cls, payload: bytes = b"", token_cost: int = 0, latency: float | None = None) -> "WorkOutcome":
        return cls(True, payload, None, token_cost, latency)

    @classmethod
    def failed(cls, error: str, token_cost: int = 0, latency: float | None = None) -> "WorkOutcome":
        return cls(False, b"", error, token_cost, latency)

    @classmethod
    def coerce(cls, value: Any) -> "WorkOutcome":
        """Accept a WorkOutcome or a ``(success, payload, error, cost, latency)`` tuple."""
        if isinstance(value, cls):
            outcome = value
        elif isinstance(value, tuple) and len(value) == 5:
            outcome = cls(*value)
        else:
            raise ValidationError(
                "work function must return a WorkOutcome or a "
                f"(success, payload, error, cost, latency) tuple, got {type(value).__name__}"
            )

        payload = outcome.payload
        if payload is None:
            payload = b""
        elif isinstance(payload, str):
            payload = payload.encode("utf-8")
        elif not isinstance(payload, (bytes, bytearray, memoryview)):
            raise ValidationError(f"work payload must be bytes, got {type(payload).__name__}")

        error = outcome.error
        if outcome.success:
            error = None
        elif not error:
            error = "work reported failure"

        return cls(
            success=bool(outcome.success),
            payload=bytes(payload),
            error=error,
            token_cost=outcome.token_cost or 0,
            latency=outcome.latency,
        )


class _KeyLocks:
    """
    One ``threading.Lock`` per operation key, shared by sync and async callers.

    An entry lives only while some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # key -> [lock, holders]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    @asynccontextmanager
    async def hold_async(self, key: str) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            acquiring = asyncio.ensure_future(asyncio.to_thread(lock.acquire))
            try:
                await asyncio.shield(acquiring)
            except asyncio.CancelledError:
                # The worker thread may still get the lock; hand it straight back.
                def _release_if_acquired(done: asyncio.Future) -> None:
                    if not done.cancelled() and done.exception() is None:
                        lock.release()

                acquiring.add_done_callback(_release_if_acquired)
                raise
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


@dataclass
class CoordinationResult:
    """Result of a coordinate call."""
    operation_key: str
    receipt: Receipt
    cached: bool

    @property
    def success(self) -> bool:
        return self.receipt.success

    @property
    def payload(self) -> bytes:
        return self.receipt.result_payload

    @property
    def error_message(self) -> Optional[str]:
        return self.receipt.error_message

    @property
    def executed(self) -> bool:
        return not self.cached

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for inspection tooling."""
        result = {
            "ok": self.success,
            "operation_key": self.operation_key,
            "receipt_id": self.receipt.receipt_id,
            "cached": self.cached,
        }
        if not self.success:
            result["error_message"] = self.error_message
        return result


@dataclass
class ProtocolMetrics:
    queries: int = 0
    cache_hits: int = 0
    executions: int = 0
    recorded_failures: int = 0
    tokens_saved: int = 0  # token cost of work answered from receipts instead of re-run

    @property
    def hit_rate(self) -> float:
        return self.cache_hits / self.queries if self.queries else 0.0


WorkFn = Callable[[str], Union[WorkOutcome, tuple]]
AsyncWorkFn = Callable[[str], Awaitable[Union[WorkOutcome, tuple]]]


class CoordinationProtocol:
    """
    Query-before-act over one container.

    Example:
        with CoordinationProtocol.open(path, "agent-a", "t1") as protocol:
            result = protocol.coordinate("git:clone:repo", clone_repo)
            result.payload
    """

    def __init__(
        self,
        container: Container,
        destination: Path | str | None = None,
        *,
        engine: PersistenceEngine | None = None,
        respect_prior_failure: bool = False,
        retention: RetentionPolicy | None = None,
        executor_id: str | None = None,
    ):
        """
        Args:
            container: Container to query and append to
            destination: File to save after each new receipt (None keeps it in memory)
            engine: PersistenceEngine used for saves
            respect_prior_failure: Return a recorded failure instead of retrying
            retention: Policy applied on checkpoint
            executor_id: Agent recorded on receipts (defaults to the container owner)
        """
        self._container = container
        self._destination = Path(destination) if destination is not None else None
        self._engine = engine or PersistenceEngine()
        self._respect_prior_failure = respect_prior_failure
        self._retention = retention or RetentionPolicy()
        self._executor_id = executor_id
        self._metrics = ProtocolMetrics()

        self._metrics_guard = threading.Lock()
        self._key_locks = _KeyLocks()

    @classmethod
    def open(
        cls,
        path: Path | str,
        owning_agent_id: str,
        trace_id: str,
        *,
        engine: PersistenceEngine | None = None,
        hasher: ContentHasher | None = None,
        **kwargs: Any,
    ) -> "CoordinationProtocol":
        """
        Bootstrap a session: load the container at ``path`` or create it.

        Raises:
            IntegrityViolation: If an existing file fails verification
        """
        engine = engine or PersistenceEngine()
        path = Path(path)
        if path.exists():
            container = engine.load(path)
            logger.info(
                "Resumed trace %s with %d receipts",
                container.trace_id,
                container.stats().receipt_count,
            )
        else:
            container = Container.create(owning_agent_id, trace_id, hasher=hasher)
        return cls(container, path, engine=engine, **kwargs)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        trace_id: str,
        owning_agent_id: str | None = None,
    ) -> "CoordinationProtocol":
        """Open the conventional container for ``trace_id`` under ``settings.storage_dir``."""
        agent_id = owning_agent_id or settings.agent_id
        if not agent_id:
            raise ValidationError("an owning agent id is required (argument or settings.agent_id)")
        return cls.open(
            container_path(settings.storage_dir, trace_id),
            agent_id,
            trace_id,
            engine=PersistenceEngine(fsync=settings.fsync),
            hasher=ContentHasher(settings.hash_algorithm),
            respect_prior_failure=settings.respect_prior_failure,
            retention=RetentionPolicy(settings.retain_count),
        )

    @property
    def container(self) -> Container:
        return self._container

    @property
    def destination(self) -> Optional[Path]:
        return self._destination

    @property
    def metrics(self) -> ProtocolMetrics:
        return self._metrics

    # ------------------------------------------------------------------ #
    # Prior work

    def check_prior_work(self, operation_key: str) -> Optional[Receipt]:
        """The latest receipt for the key, if it records a success."""
        receipt = self._container.latest_receipt(operation_key)
        if receipt is not None and receipt.success:
            return receipt
        return None

    def ensure_not_redundant(self, operation_key: str) -> None:
        """
        Raises:
            RedundantOperation: If the operation already succeeded
        """
        receipt = self.check_prior_work(operation_key)
        if receipt is not None:
            raise RedundantOperation(operation_key, receipt.receipt_id)

    # ------------------------------------------------------------------ #
    # Coordination

    def _count(self, **deltas: int) -> None:
        with self._metrics_guard:
            for name, delta in deltas.items():
                setattr(self._metrics, name, getattr(self._metrics, name) + delta)

    def _lookup(self, operation_key: str, respect_prior_failure: bool | None) -> Optional[CoordinationResult]:
        respect = self._respect_prior_failure if respect_prior_failure is None else respect_prior_failure
        self._count(queries=1)
        prior = self._container.latest_receipt(operation_key)
        if prior is None:
            return None
        if not prior.success and not respect:
            logger.debug("Retrying %s after failed receipt %s", operation_key, prior.receipt_id)
            return None

        self._count(cache_hits=1, tokens_saved=prior.token_cost if prior.success else 0)
        logger.debug("Answered %s from receipt %s", operation_key, prior.receipt_id)
        return CoordinationResult(operation_key, prior, cached=True)

    def _record(self, operation_key: str, outcome: WorkOutcome, latency: float) -> CoordinationResult:
        container = self._container
        receipt = Receipt.build(
            operation_key=operation_key,
            owning_agent_id=self._executor_id or container.owning_agent_id,
            trace_id=container.trace_id,
            success=outcome.success,
            result_payload=outcome.payload,
            error_message=outcome.error,
            token_cost=outcome.token_cost,
            latency=outcome.latency if outcome.latency is not None else latency,
            hasher=container.hasher,
        )
        container.add_receipt(receipt)
        container.record_usage(
            operation_key,
            receipt.token_cost,
            used_at=receipt.created_at,
            executor=self._executor_id,
        )

        self._count(executions=1, recorded_failures=0 if receipt.success else 1)
        if not receipt.success:
            logger.info("Recorded failure for %s: %s", operation_key, receipt.error_message)

        if self._destination is not None:
            self._engine.save(container, self._destination)
        return CoordinationResult(operation_key, receipt, cached=False)

    @staticmethod
    def _failure_from(operation_key: str, exc: Exception) -> WorkOutcome:
        logger.warning("Work for %s raised %s: %s", operation_key, type(exc).__name__, exc)
        return WorkOutcome.failed(str(exc) or type(exc).__name__)

    def coordinate(
        self,
        operation_key: str,
        work_fn: WorkFn,
        *,
        respect_prior_failure: bool | None = None,
    ) -> CoordinationResult:
        """
        Return the recorded answer for ``operation_key``, or do the work once.

        Args:
            operation_key: Key identifying the unit of work
            work_fn: Called with the key when no usable receipt exists
            respect_prior_failure: Per-call override of the instance default

        Raises:
            InvalidOperationKey: If the key is malformed
            WriteFailure: If saving fails; the receipt stays in the container
        """
        validate_operation_key(operation_key)
        with self._key_locks.hold(operation_key):
            cached = self._lookup(operation_key, respect_prior_failure)
            if cached is not None:
                return cached

            start = time.perf_counter()
            try:
                raw = work_fn(operation_key)
            except Exception as e:
                outcome = self._failure_from(operation_key, e)
            else:
                outcome = WorkOutcome.coerce(raw)
            latency = (time.perf_counter() - start) * 1000.0
            return self._record(operation_key, outcome, latency)

    async def coordinate_async(
        self,
        operation_key: str,
        work_fn: AsyncWorkFn,
        *,
        respect_prior_failure: bool | None = None,
    ) -> CoordinationResult:
        """
        ``coordinate`` for awaitable work.

        Sync and async callers share the per-key locks, so a thread and a
        task asking for the same key still get one execution. Waiting for the
        lock and the save both run in worker threads. If the task is
        cancelled while the work is pending, nothing is recorded.
        """
        validate_operation_key(operation_key)
        async with self._key_locks.hold_async(operation_key):
            cached = self._lookup(operation_key, respect_prior_failure)
            if cached is not None:
                return cached

            start = time.perf_counter()
            try:
                raw = await work_fn(operation_key)
            except Exception as e:
                outcome = self._failure_from(operation_key, e)
            else:
                outcome = WorkOutcome.coerce(raw)
            latency = (time.perf_counter() - start) * 1000.0
            return await asyncio.to_thread(self._record, operation_key, outcome, latency)

    # ------------------------------------------------------------------ #
    # Session state

    def checkpoint(self, snapshot: StateSnapshot) -> CompactionReport:
        """Append a state snapshot, apply retention, and persist."""
        self._container.add_state_snapshot(snapshot)
        report = self._retention.compact(self._container)
        self.flush()
        return report

    def flush(self) -> Optional[Path]:
        """Persist the container if this protocol has a destination."""
        if self._destination is None:
            return None
        return self._engine.save(self._container, self._destination)

    def __enter__(self) -> "CoordinationProtocol":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.flush()
            return
        # Keep what was recorded before the error; the error itself still propagates.
        try:
            self.flush()
        except WriteFailure:
            logger.exception("Could not flush container %s while unwinding", self._container.container_id)


def coordinate(
    container: Container,
    operation_key: str,
    work_fn: WorkFn,
    destination: Path | str | None = None,
    *,
    engine: PersistenceEngine | None = None,
    respect_prior_failure: bool = False,
) -> CoordinationResult:
    """One-shot query-before-act against ``container``."""
    protocol = CoordinationProtocol(
        container,
        destination,
        engine=engine,
        respect_prior_failure=respect_prior_failure,
    )
    return protocol.coordinate(operation_key, work_fn)
