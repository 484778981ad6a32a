"""
RemoteSync: moving container bytes to and from a shared aggregation point.

The core only exposes and accepts serialized bytes; transports live behind
the ``RemoteSync`` protocol:

    push(container_bytes) -> SyncAck
    pull(container_id)    -> container_bytes

The SyncBridge connects a container to a remote:
  1. Receipt appended → Container fires hook
  2. SyncBridge records the receipt id as pending
  3. flush() serializes the container and pushes it
  4. pull() fetches bytes and verifies them before handing back a Container

The remote is last-writer-wins, like the local file.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Protocol

import httpx

from .config import Settings
from .errors import ConfigError, RemoteSyncError
from .kernel.container import Container
from .kernel.persistence import PersistenceEngine, read_header
from .kernel.schema import Receipt, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SyncAck:
    """Acknowledgement of a push."""
    container_id: str
    content_hash: str
    accepted: bool = True
    received_at: datetime = field(default_factory=utc_now)


class RemoteSync(Protocol):
    def push(self, container_bytes: bytes) -> SyncAck:
        ...

    def pull(self, container_id: str) -> bytes:
        ...


class InMemoryRemote:
    """Dict-backed remote for tests and single-host setups."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def push(self, container_bytes: bytes) -> SyncAck:
        header = read_header(container_bytes)
        self._blobs[header.container_id] = bytes(container_bytes)
        return SyncAck(container_id=header.container_id, content_hash=header.content_hash)

    def pull(self, container_id: str) -> bytes:
        try:
            return self._blobs[container_id]
        except KeyError:
            raise RemoteSyncError(f"Container not found on remote: {container_id}") from None

    def container_ids(self) -> list[str]:
        return sorted(self._blobs)


class HttpRemoteSync:
    """
    Remote reached over HTTP.

        PUT {base_url}/containers/{container_id}   body: container bytes
        GET {base_url}/containers/{container_id}   -> container bytes
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        token: str | None = None,
    ):
        self.base_url = base_url
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.Client | None = None) -> "HttpRemoteSync":
        """
        Remote at ``settings.remote_url``.

        Raises:
            ConfigError: If no remote url is configured
        """
        if not settings.remote_url:
            raise ConfigError("no remote url configured ([remote] url)")
        return cls(settings.remote_url, client=client)

    def push(self, container_bytes: bytes) -> SyncAck:
        header = read_header(container_bytes)
        try:
            response = self._client.put(
                f"/containers/{header.container_id}",
                content=container_bytes,
                headers={"Content-Type": "application/octet-stream"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"Push of {header.container_id} failed: {e}") from e
        logger.info("Pushed container %s (%d bytes)", header.container_id, len(container_bytes))
        return SyncAck(container_id=header.container_id, content_hash=header.content_hash)

    def pull(self, container_id: str) -> bytes:
        try:
            response = self._client.get(f"/containers/{container_id}")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise RemoteSyncError(f"Container not found on remote: {container_id}") from e
            raise RemoteSyncError(f"Pull of {container_id} failed: {e}") from e
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"Pull of {container_id} failed: {e}") from e
        return response.content

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class SyncBridge:
    """
    Bridges container appends to a remote.

    Receipts appended since the last push are tracked as pending; ``flush``
    pushes the whole container when there is anything pending.
    """

    def __init__(
        self,
        container: Container,
        remote: RemoteSync,
        engine: PersistenceEngine | None = None,
    ):
        self._container = container
        self._remote = remote
        self._engine = engine or PersistenceEngine()
        self._pending: list[str] = []
        self._on_pushed: Callable[[SyncAck], None] | None = None

        container.add_receipt_hook(self._on_receipt_added)

    @property
    def pending_receipts(self) -> list[str]:
        """Receipt ids appended since the last push."""
        return self._pending.copy()

    def set_push_callback(self, callback: Callable[[SyncAck], None] | None) -> None:
        self._on_pushed = callback

    def _on_receipt_added(self, receipt: Receipt) -> None:
        self._pending.append(receipt.receipt_id)

    def push(self) -> SyncAck:
        """Push the container now, pending or not."""
        ack = self._remote.push(self._engine.to_bytes(self._container))
        self._pending = []
        if self._on_pushed:
            self._on_pushed(ack)
        return ack

    def flush(self) -> Optional[SyncAck]:
        """Push if any receipts are pending."""
        if not self._pending:
            return None
        return self.push()

    def pull(self, container_id: str | None = None) -> Container:
        """
        Fetch and verify a container from the remote.

        Raises:
            RemoteSyncError: If the remote cannot supply it
            IntegrityViolation: If the fetched bytes fail verification
        """
        container_id = container_id or self._container.container_id
        data = self._remote.pull(container_id)
        return self._engine.from_bytes(data, origin=f"remote:{container_id}")

    def close(self) -> None:
        """Unhook from the container."""
        self._container.remove_receipt_hook(self._on_receipt_added)
