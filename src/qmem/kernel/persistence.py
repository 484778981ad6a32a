"""
PersistenceEngine: durable, verifiable container files.

File layout:

    b"QMEM" | u16 format_version
    frame*  where frame = u8 tag | u32 length (big-endian) | body

Frames appear in section order: one header (tag 1), the receipt log
(tag 2), the state snapshot log (tag 3), the coordinate dictionary (tag 4),
then an empty end marker (tag 0xFF). Bodies are the records' JSON encoding,
so field names are the stable tags and any runtime can read them.

The index is never written. Loading rebuilds it, recomputes every record
hash and the folded container digest, and refuses the whole file if
anything disagrees. Saving writes a temp file next to the destination and
swaps it in with ``os.replace``.
"""
from __future__ import annotations

import logging
import os
import struct
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import pydantic

from ..errors import IntegrityViolation, ValidationError, WriteFailure
from .container import Container
from .hasher import ContentHasher
from .schema import FORMAT_VERSION, CoordinateDictionaryEntry, Header, Receipt, StateSnapshot

logger = logging.getLogger(__name__)

MAGIC = b"QMEM"
FILE_SUFFIX = ".qmem"

TAG_HEADER = 0x01
TAG_RECEIPT = 0x02
TAG_STATE = 0x03
TAG_COORDINATE = 0x04
TAG_END = 0xFF

_PREAMBLE = struct.Struct(">4sH")
_FRAME = struct.Struct(">BI")

# Section order; a tag may repeat but never go backwards
_SECTION_ORDER = {TAG_HEADER: 0, TAG_RECEIPT: 1, TAG_STATE: 2, TAG_COORDINATE: 3, TAG_END: 4}

_RECORD_TYPES = {
    TAG_HEADER: Header,
    TAG_RECEIPT: Receipt,
    TAG_STATE: StateSnapshot,
    TAG_COORDINATE: CoordinateDictionaryEntry,
}


def container_path(storage_dir: Path | str, trace_id: str) -> Path:
    """Conventional location for a trace's container: ``{trace_id}.qmem``."""
    return Path(storage_dir) / f"{trace_id}{FILE_SUFFIX}"


@dataclass
class Frame:
    tag: int
    body: bytes


@dataclass
class FrameScan:
    """Result of reading frames from a container file."""

    format_version: int
    frames: list[Frame]
    truncated: bool = False
    trailing_bytes: int = 0


def encode_frame(tag: int, body: bytes) -> bytes:
    return _FRAME.pack(tag, len(body)) + body


def iter_frames(data: bytes, offset: int) -> Iterator[Frame]:
    """Yield complete frames; stop quietly at a truncated trailing frame."""
    while offset < len(data):
        if offset + _FRAME.size > len(data):
            return
        tag, length = _FRAME.unpack_from(data, offset)
        start = offset + _FRAME.size
        end = start + length
        if end > len(data):
            return
        yield Frame(tag, data[start:end])
        offset = end


def scan_frames(data: bytes) -> FrameScan:
    """
    Split raw container bytes into frames.

    A truncated trailing frame is discarded and flagged rather than treated
    as a parse error; deciding whether that is acceptable is up to the caller.

    Raises:
        ValueError: If the preamble is missing or carries the wrong magic
    """
    if len(data) < _PREAMBLE.size:
        raise ValueError("file shorter than the format preamble")
    magic, version = _PREAMBLE.unpack_from(data, 0)
    if magic != MAGIC:
        raise ValueError(f"bad magic {magic!r}")

    frames: list[Frame] = []
    consumed = _PREAMBLE.size
    for frame in iter_frames(data, _PREAMBLE.size):
        frames.append(frame)
        consumed += _FRAME.size + len(frame.body)

    trailing = len(data) - consumed
    if trailing:
        logger.warning("Discarding %d bytes of truncated trailing frame", trailing)
    ended = bool(frames) and frames[-1].tag == TAG_END
    return FrameScan(
        format_version=version,
        frames=frames,
        truncated=bool(trailing) or not ended,
        trailing_bytes=trailing,
    )


class PersistenceEngine:
    """
    Serialize, atomically write, load and verify containers.

    Example:
        engine = PersistenceEngine()
        engine.save(container, container_path("/var/qmem", container.trace_id))
        restored = engine.load(container_path("/var/qmem", "t1"))
    """

    def __init__(self, fsync: bool = True) -> None:
        self._fsync = fsync

    # ------------------------------------------------------------------ #
    # Serialization

    def to_bytes(self, container: Container) -> bytes:
        header, receipts, snapshots, coordinates = container.export_state()
        parts = [_PREAMBLE.pack(MAGIC, header.format_version)]
        parts.append(encode_frame(TAG_HEADER, header.model_dump_json().encode("utf-8")))
        for receipt in receipts:
            parts.append(encode_frame(TAG_RECEIPT, receipt.model_dump_json().encode("utf-8")))
        for snapshot in snapshots:
            parts.append(encode_frame(TAG_STATE, snapshot.model_dump_json().encode("utf-8")))
        for entry in coordinates:
            parts.append(encode_frame(TAG_COORDINATE, entry.model_dump_json().encode("utf-8")))
        parts.append(encode_frame(TAG_END, b""))
        return b"".join(parts)

    def from_bytes(
        self,
        data: bytes,
        origin: Path | str | None = None,
        verify_key: bytes | str | None = None,
    ) -> Container:
        """
        Decode and verify a container. All or nothing.

        When ``verify_key`` is given the header must also carry a valid
        Ed25519 signature from that key.

        Raises:
            IntegrityViolation: If the bytes are truncated, malformed, or do
                not hash to the header's content_hash
        """
        try:
            scan = scan_frames(data)
        except ValueError as e:
            raise IntegrityViolation(str(e), path=origin) from e

        container_id: str | None = None
        try:
            if scan.format_version != FORMAT_VERSION:
                raise IntegrityViolation(
                    f"unsupported format_version {scan.format_version}", path=origin
                )
            if scan.truncated:
                raise IntegrityViolation("container file is truncated", path=origin)

            header, receipts, snapshots, coordinates = self._decode_frames(scan.frames, origin)
            container_id = header.container_id
            if header.format_version != scan.format_version:
                raise IntegrityViolation(
                    "header format_version disagrees with file preamble",
                    container_id=container_id,
                    path=origin,
                )

            try:
                hasher = ContentHasher.for_tagged(header.content_hash)
            except ValueError as e:
                raise IntegrityViolation(str(e), container_id=container_id, path=origin) from e

            for record in (*receipts, *snapshots):
                if hasher.record_digest(record) != record.record_hash:
                    record_id = getattr(record, "receipt_id", None) or getattr(record, "state_id", "?")
                    raise IntegrityViolation(
                        f"record {record_id} does not match its record_hash",
                        container_id=container_id,
                        path=origin,
                    )

            if header.entry_count != len(receipts) + len(snapshots):
                raise IntegrityViolation(
                    f"header entry_count {header.entry_count} does not match "
                    f"{len(receipts) + len(snapshots)} records",
                    container_id=container_id,
                    path=origin,
                )

            try:
                container = Container(header, receipts, snapshots, coordinates, hasher=hasher)
            except ValidationError as e:
                raise IntegrityViolation(str(e), container_id=container_id, path=origin) from e

            actual = container.compute_content_hash()
            if actual != header.content_hash:
                raise IntegrityViolation(
                    f"content hash mismatch: header says {header.content_hash}, logs fold to {actual}",
                    container_id=container_id,
                    path=origin,
                )
            if verify_key is not None:
                from ..signing import verify_container_signature

                verify_container_signature(container, verify_key, origin=origin)
        except IntegrityViolation as e:
            logger.warning("Rejected container: %s", e)
            raise

        logger.debug(
            "Verified container %s: %d receipts, %d snapshots",
            container_id,
            len(receipts),
            len(snapshots),
        )
        return container

    def _decode_frames(
        self,
        frames: list[Frame],
        origin: Path | str | None,
    ) -> tuple[Header, list[Receipt], list[StateSnapshot], list[CoordinateDictionaryEntry]]:
        header: Header | None = None
        receipts: list[Receipt] = []
        snapshots: list[StateSnapshot] = []
        coordinates: list[CoordinateDictionaryEntry] = []
        section = -1

        for position, frame in enumerate(frames):
            container_id = header.container_id if header else None
            order = _SECTION_ORDER.get(frame.tag)
            if order is None:
                raise IntegrityViolation(
                    f"unknown frame tag 0x{frame.tag:02x} at frame {position}",
                    container_id=container_id,
                    path=origin,
                )
            if order < section or (frame.tag == TAG_HEADER and header is not None):
                raise IntegrityViolation(
                    f"frame {position} (tag 0x{frame.tag:02x}) is out of section order",
                    container_id=container_id,
                    path=origin,
                )
            if header is None and frame.tag != TAG_HEADER:
                raise IntegrityViolation("first frame is not a header", path=origin)
            section = order

            if frame.tag == TAG_END:
                if frame.body:
                    raise IntegrityViolation(
                        "end marker carries a body", container_id=container_id, path=origin
                    )
                continue

            try:
                record = _RECORD_TYPES[frame.tag].model_validate_json(frame.body)
            except pydantic.ValidationError as e:
                raise IntegrityViolation(
                    f"frame {position} (tag 0x{frame.tag:02x}) is not a valid record: "
                    f"{e.error_count()} error(s)",
                    container_id=container_id,
                    path=origin,
                ) from e
            # Bodies must be byte-for-byte what the record encodes to, so no
            # edit can hide in a spot the decoder happens to ignore.
            if record.model_dump_json().encode("utf-8") != frame.body:
                raise IntegrityViolation(
                    f"frame {position} (tag 0x{frame.tag:02x}) is not in canonical form",
                    container_id=container_id,
                    path=origin,
                )

            if frame.tag == TAG_HEADER:
                header = record
            elif frame.tag == TAG_RECEIPT:
                receipts.append(record)
            elif frame.tag == TAG_STATE:
                snapshots.append(record)
            else:
                coordinates.append(record)

        if header is None:
            raise IntegrityViolation("container file has no header", path=origin)
        return header, receipts, snapshots, coordinates

    # ------------------------------------------------------------------ #
    # Files

    def save(self, container: Container, destination: Path | str) -> Path:
        """
        Atomically write a container to ``destination``.

        Raises:
            WriteFailure: On any I/O error. The destination keeps its previous
                content and the in-memory container is unchanged.
        """
        path = Path(destination)
        data = self.to_bytes(container)
        tmp_path: Path | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.",
                suffix=".tmp",
                dir=str(path.parent),
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise WriteFailure(path, str(e)) from e
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()

        logger.info(
            "Saved container %s (%d bytes) to %s", container.container_id, len(data), path
        )
        return path

    def load(self, source: Path | str, verify_key: bytes | str | None = None) -> Container:
        """
        Read and verify a container file.

        Raises:
            FileNotFoundError: If ``source`` does not exist
            IntegrityViolation: If verification fails
        """
        path = Path(source)
        data = path.read_bytes()
        container = self.from_bytes(data, origin=path, verify_key=verify_key)
        logger.info("Loaded container %s from %s", container.container_id, path)
        return container

    def delete(self, path: Path | str) -> bool:
        """Destroy a persisted container. Returns False if there was nothing to delete."""
        path = Path(path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted container file %s", path)
        return True


def save_container(container: Container, destination: Path | str, fsync: bool = True) -> Path:
    return PersistenceEngine(fsync=fsync).save(container, destination)


def load_container(source: Path | str, verify_key: bytes | str | None = None) -> Container:
    return PersistenceEngine().load(source, verify_key=verify_key)


def read_header(data: bytes) -> Header:
    """
    Decode only the header frame, without verifying the logs.

    For routing bytes (e.g. to a remote) by container id. Use ``from_bytes``
    before trusting anything else in ``data``.

    Raises:
        IntegrityViolation: If the bytes do not start with a readable header
    """
    try:
        scan = scan_frames(data)
    except ValueError as e:
        raise IntegrityViolation(str(e)) from e
    if not scan.frames or scan.frames[0].tag != TAG_HEADER:
        raise IntegrityViolation("container bytes have no header frame")
    try:
        return Header.model_validate_json(scan.frames[0].body)
    except pydantic.ValidationError as e:
        raise IntegrityViolation(f"header frame is not valid: {e.error_count()} error(s)") from e
