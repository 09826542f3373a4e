from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedItem:
    kind: str
    reference: str
    reason: str


@dataclass
class ImportReport:
    """What an import run did; informational only, never raised."""

    counts: dict[str, int] = field(
        default_factory=lambda: {
            "profile_field": 0,
            "setting": 0,
            "contact_group": 0,
            "tag_following": 0,
            "participation": 0,
            "contact": 0,
            "aspect_membership": 0,
            "block": 0,
        }
    )
    skipped: list[SkippedItem] = field(default_factory=list)
    author_resolved: Optional[bool] = None
    account_created: bool = False

    def count(self, key: str, amount: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + amount

    def skip(self, kind: str, reference: str, reason: str) -> None:
        logger.warning("Skipping %s %r: %s", kind, reference, reason)
        self.skipped.append(SkippedItem(kind=kind, reference=reference, reason=reason))

    def skipped_references(self, kind: str) -> list[str]:
        return [item.reference for item in self.skipped if item.kind == kind]
