"""
Error taxonomy for qmem.

Validation and integrity failures always surface to the caller. A query miss
is not an error (empty result), and a failed unit of work is recorded as a
receipt rather than raised.
"""
from __future__ import annotations

from pathlib import Path


class QmemError(Exception):
    """Base class for all qmem errors."""

    pass


class ValidationError(QmemError, ValueError):
    """Input rejected before it could touch a container."""

    pass


class InvalidOperationKey(ValidationError):
    """Operation key is empty, too long, or malformed."""

    def __init__(self, operation_key: object, reason: str):
        self.operation_key = operation_key
        self.reason = reason
        super().__init__(f"Invalid operation key {operation_key!r}: {reason}")


class DuplicateReceiptId(ValidationError):
    """A receipt with this id already exists in the container."""

    def __init__(self, receipt_id: str):
        self.receipt_id = receipt_id
        super().__init__(f"Receipt already recorded: {receipt_id}")


class DuplicateStateId(ValidationError):
    """A state snapshot with this id already exists in the container."""

    def __init__(self, state_id: str):
        self.state_id = state_id
        super().__init__(f"State snapshot already recorded: {state_id}")


class RedundantOperation(ValidationError):
    """The operation already has a successful receipt; do not re-execute."""

    def __init__(self, operation_key: str, receipt_id: str):
        self.operation_key = operation_key
        self.receipt_id = receipt_id
        super().__init__(
            f"Operation '{operation_key}' already completed. Receipt: {receipt_id}"
        )


class IntegrityViolation(QmemError):
    """
    Persisted container failed verification.

    None of the container's records may be trusted once this is raised.
    """

    def __init__(
        self,
        reason: str,
        container_id: str | None = None,
        path: Path | str | None = None,
    ):
        self.reason = reason
        self.container_id = container_id
        self.path = str(path) if path is not None else None
        where = []
        if container_id:
            where.append(f"container={container_id}")
        if self.path:
            where.append(f"path={self.path}")
        suffix = f" ({', '.join(where)})" if where else ""
        super().__init__(f"Integrity violation: {reason}{suffix}")


class SignatureMismatch(IntegrityViolation):
    """Container signature is missing, malformed, or does not verify."""

    pass


class WriteFailure(QmemError):
    """Saving a container failed; the in-memory container is still valid."""

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Failed to write container to {self.path}: {reason}")


class RemoteSyncError(QmemError):
    """Push or pull against a remote aggregation point failed."""

    pass


class ConfigError(QmemError):
    """Settings file or environment override is invalid."""

    pass
