"""
ContentHasher: deterministic digests for records and whole containers.

Record digests cover the record's canonical JSON body with its own
``record_hash`` field left out. The container digest folds record digests in
log order, so truncation and reordering both change it.
"""
from __future__ import annotations

import hashlib
from typing import Any, Iterable

SUPPORTED_ALGORITHMS = ("sha256", "blake2b", "sha3_256")
DEFAULT_ALGORITHM = "sha256"


def parse_tagged(value: str) -> tuple[str, str]:
    """Split ``"<algorithm>:<hex>"`` into its parts."""
    algorithm, sep, hexdigest = value.partition(":")
    if not sep or algorithm not in SUPPORTED_ALGORITHMS or not hexdigest:
        raise ValueError(f"Not a tagged digest: {value!r}")
    try:
        bytes.fromhex(hexdigest)
    except ValueError as e:
        raise ValueError(f"Digest is not hex: {value!r}") from e
    return algorithm, hexdigest


class ContentHasher:
    def __init__(self, algorithm: str = DEFAULT_ALGORITHM) -> None:
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"Unsupported hash algorithm {algorithm!r}; "
                f"expected one of {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        self._algorithm = algorithm

    @classmethod
    def for_tagged(cls, value: str) -> "ContentHasher":
        """Hasher matching the algorithm tag of a stored digest."""
        algorithm, _ = parse_tagged(value)
        return cls(algorithm)

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def _new(self):
        return hashlib.new(self._algorithm)

    def hash(self, data: bytes) -> str:
        h = self._new()
        h.update(data)
        return h.hexdigest()

    def canonical_bytes(self, record: Any) -> bytes:
        return record.model_dump_json(exclude={"record_hash"}).encode("utf-8")

    def record_digest(self, record: Any) -> str:
        return self.hash(self.canonical_bytes(record))

    def start_fold(self):
        """Running fold state; feed it with ``absorb`` and close it with ``finish``."""
        return self._new()

    def absorb(self, fold, digest: str) -> None:
        fold.update(bytes.fromhex(digest))

    def finish(self, fold) -> str:
        return self.tag(fold.hexdigest())

    def fold(self, digests: Iterable[str]) -> str:
        fold = self.start_fold()
        for digest in digests:
            self.absorb(fold, digest)
        return self.finish(fold)

    def tag(self, hexdigest: str) -> str:
        return f"{self._algorithm}:{hexdigest}"

    def digest_of_container(self, container: Any) -> str:
        """Fold stored record hashes: receipts first, then snapshots."""
        digests = [r.record_hash for r in container.receipts]
        digests.extend(s.record_hash for s in container.snapshots)
        return self.fold(digests)
