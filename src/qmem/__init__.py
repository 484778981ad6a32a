"""
qmem: verifiable, queryable memory for autonomous agents.

Agents record a receipt for every unit of work and ask their container
before acting, so work is not redone and coordination needs no messages.

Public API re-exports from kernel/ (machinery) and the policy modules.
"""
from .errors import (
    ConfigError,
    DuplicateReceiptId,
    DuplicateStateId,
    IntegrityViolation,
    InvalidOperationKey,
    QmemError,
    RedundantOperation,
    RemoteSyncError,
    SignatureMismatch,
    ValidationError,
    WriteFailure,
)
from .kernel import (
    Container,
    ContainerStats,
    ContentHasher,
    CoordinateDictionaryEntry,
    Header,
    PersistenceEngine,
    Receipt,
    StateSnapshot,
    container_path,
    load_container,
    save_container,
)
from .retention import CompactionReport, RetentionPolicy
from .config import Settings, load_settings, save_settings
from .protocol import (
    CoordinationProtocol,
    CoordinationResult,
    ProtocolMetrics,
    WorkOutcome,
    coordinate,
)
from .sync import HttpRemoteSync, InMemoryRemote, RemoteSync, SyncAck, SyncBridge
from .signing import sign_container, verify_container_signature

__version__ = "0.1.0"

__all__ = [
    # Errors
    "ConfigError",
    "DuplicateReceiptId",
    "DuplicateStateId",
    "IntegrityViolation",
    "InvalidOperationKey",
    "QmemError",
    "RedundantOperation",
    "RemoteSyncError",
    "SignatureMismatch",
    "ValidationError",
    "WriteFailure",
    # Records
    "ContainerStats",
    "CoordinateDictionaryEntry",
    "Header",
    "Receipt",
    "StateSnapshot",
    # Container and persistence
    "Container",
    "ContentHasher",
    "PersistenceEngine",
    "container_path",
    "load_container",
    "save_container",
    # Retention
    "CompactionReport",
    "RetentionPolicy",
    # Settings
    "Settings",
    "load_settings",
    "save_settings",
    # Protocol
    "CoordinationProtocol",
    "CoordinationResult",
    "ProtocolMetrics",
    "WorkOutcome",
    "coordinate",
    # Sync
    "HttpRemoteSync",
    "InMemoryRemote",
    "RemoteSync",
    "SyncAck",
    "SyncBridge",
    # Signing
    "sign_container",
    "verify_container_signature",
]
