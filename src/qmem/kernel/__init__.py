"""
Kernel: the machinery of qmem.

- schema: record types (Header, Receipt, StateSnapshot, coordinate entries)
- hasher: content digests for records and containers
- index: derived receipt lookups, rebuilt rather than persisted
- locking: reader/writer lock guarding container mutations
- container: the in-memory unit of agent memory
- persistence: binary file format, atomic saves, verified loads

Policy and integration (retention, the coordination protocol, remote sync)
live one level up.
"""
from .schema import (
    FORMAT_VERSION,
    ContainerStats,
    CoordinateDictionaryEntry,
    Header,
    Receipt,
    StateSnapshot,
    validate_operation_key,
)
from .hasher import ContentHasher
from .index import ReceiptIndex
from .locking import ReadWriteLock
from .container import Container
from .persistence import PersistenceEngine, container_path, load_container, save_container

__all__ = [
    # Schema
    "FORMAT_VERSION",
    "ContainerStats",
    "CoordinateDictionaryEntry",
    "Header",
    "Receipt",
    "StateSnapshot",
    "validate_operation_key",
    # Hashing
    "ContentHasher",
    # Index
    "ReceiptIndex",
    "ReadWriteLock",
    # Container
    "Container",
    # Persistence
    "PersistenceEngine",
    "container_path",
    "load_container",
    "save_container",
]
