"""
Retention: bounding the state snapshot log.

Snapshots are bulky and only the recent ones matter for resuming an agent,
so the log is cut back to a fixed count. Receipts are the durable
proof-of-work ledger and are never pruned.

Pruned snapshots are handed back in the report so a caller can archive
them before they are gone.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import ValidationError
from .kernel.schema import StateSnapshot

if TYPE_CHECKING:
    from .kernel.container import Container

logger = logging.getLogger(__name__)

DEFAULT_RETAIN_COUNT = 100


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class CompactionReport:
    """Results of one compaction pass."""
    container_id: str
    retain_count: int
    retained_count: int
    pruned: list[StateSnapshot] = field(default_factory=list)
    content_hash: str = ""

    @property
    def pruned_count(self) -> int:
        return len(self.pruned)


# =============================================================================
# Policy
# =============================================================================


class RetentionPolicy:
    def __init__(self, retain_count: int = DEFAULT_RETAIN_COUNT) -> None:
        if retain_count < 0:
            raise ValidationError(f"retain_count must be >= 0, got {retain_count}")
        self.retain_count = retain_count

    def should_compact(self, container: "Container") -> bool:
        return len(container.snapshots) > self.retain_count

    def compact(self, container: "Container") -> CompactionReport:
        """
        Keep the most recent ``retain_count`` snapshots, in log order.

        The container rebuilds its index and refreshes its header as part of
        the same locked mutation.
        """
        pruned = container.retain_snapshots(self.retain_count)
        report = CompactionReport(
            container_id=container.container_id,
            retain_count=self.retain_count,
            retained_count=len(container.snapshots),
            pruned=pruned,
            content_hash=container.header.content_hash,
        )
        if pruned:
            logger.info(
                "Compacted %s: pruned %d snapshots, kept %d",
                report.container_id,
                report.pruned_count,
                report.retained_count,
            )
        return report

    def __repr__(self) -> str:
        return f"RetentionPolicy(retain_count={self.retain_count})"
