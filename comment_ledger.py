"""
Comment records and the de-duplicating ledger that merges them.

The ledger maps a comment id to either ``None`` (a placeholder: the id was
referenced as someone's parent but its record has not arrived yet) or a
merged ``CommentRecord``. Entries only ever move forward:
absent -> placeholder -> resolved.

Merge precedence between the two sources:
- the archive is authoritative for original content (body as first posted),
- the live API is authoritative for mutable state (score, removed/deleted).
"""

import copy
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Iterator, List, Optional, Union

REMOVED_BODIES = {"[removed]", "[ Removed by Reddit ]"}
DELETED_BODIES = {"[deleted]"}


def is_removed(body: Optional[str]) -> bool:
    """Removed by a moderator (or by Reddit)."""
    return (body or "").strip() in REMOVED_BODIES


def is_deleted(body: Optional[str]) -> bool:
    """Deleted by its author."""
    return (body or "").strip() in DELETED_BODIES


class SourceOrigin(str, Enum):
    ARCHIVE = "archive"
    LIVE = "live"
    LIVE_RESTORED = "live-restored"


class MergeOutcome(Enum):
    """What a live merge did to the ledger entry."""
    INSERTED = "inserted"
    UPDATED = "updated"
    RESTORED = "restored"
    EDITED = "edited"
    REMOVED = "removed"
    DELETED = "deleted"


@dataclass
class CommentRecord:
    id: str
    parent_id: str
    body: str
    score: int = 0
    edited: Union[bool, float] = False
    created_utc: Optional[int] = None
    author: Optional[str] = None
    source_origin: SourceOrigin = SourceOrigin.ARCHIVE
    edited_body: Optional[str] = None
    removed: bool = False
    deleted: bool = False

    def to_dict(self) -> Dict:
        row = asdict(self)
        row["source_origin"] = self.source_origin.value
        return row


@dataclass
class MergeStats:
    """Counters returned by one merge unit; summed by the coordinator."""
    requested: int = 0
    returned: int = 0
    inserted: int = 0
    restored: int = 0
    edited: int = 0
    removed: int = 0
    deleted: int = 0

    def record(self, outcome: MergeOutcome):
        if outcome is MergeOutcome.INSERTED:
            self.inserted += 1
        elif outcome is MergeOutcome.RESTORED:
            self.restored += 1
        elif outcome is MergeOutcome.EDITED:
            self.edited += 1
        elif outcome is MergeOutcome.REMOVED:
            self.removed += 1
        elif outcome is MergeOutcome.DELETED:
            self.deleted += 1

    def __add__(self, other: "MergeStats") -> "MergeStats":
        return MergeStats(**{
            name: getattr(self, name) + getattr(other, name)
            for name in self.__dataclass_fields__
        })

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class CommentLedger:
    """Single source of truth for "have we seen this comment id"."""

    def __init__(self):
        self._entries: Dict[str, Optional[CommentRecord]] = {}

    def has(self, comment_id: str) -> bool:
        return comment_id in self._entries

    __contains__ = has

    def get(self, comment_id: str) -> Optional[CommentRecord]:
        return self._entries.get(comment_id)

    def is_placeholder(self, comment_id: str) -> bool:
        return comment_id in self._entries and self._entries[comment_id] is None

    def set_placeholder(self, comment_id: str):
        if comment_id not in self._entries:
            self._entries[comment_id] = None

    def merge_archive_record(self, record: CommentRecord) -> bool:
        """
        Store an archived comment unless a resolved entry already exists.

        An entry that was filled from the live API while still a placeholder
        gives way to the archived copy, and the live state is merged back on
        top of it. The result is the same as if the archive had come first.
        """
        existing = self._entries.get(record.id)
        if existing is not None and existing.source_origin is not SourceOrigin.LIVE:
            return False
        record.source_origin = SourceOrigin.ARCHIVE
        self._entries[record.id] = record
        if existing is not None:
            self.merge_live_record(existing)
        return True

    def merge_live_record(self, record: CommentRecord) -> MergeOutcome:
        existing = self._entries.get(record.id)
        if existing is None:
            # parent that the archive never returned
            record.source_origin = SourceOrigin.LIVE
            self._entries[record.id] = record
            existing = record
            outcome = MergeOutcome.INSERTED
        else:
            existing.score = record.score
            outcome = MergeOutcome.UPDATED

        if is_removed(record.body):
            existing.removed = True
            return MergeOutcome.REMOVED
        if is_deleted(record.body):
            existing.deleted = True
            return MergeOutcome.DELETED
        if existing is record:
            return outcome

        if is_removed(existing.body):
            # removed when archived, since restored by a moderator
            record.source_origin = SourceOrigin.LIVE_RESTORED
            self._entries[record.id] = record
            return MergeOutcome.RESTORED
        if existing.body != record.body:
            existing.edited_body = record.body
            existing.edited = record.edited
            return MergeOutcome.EDITED
        return outcome

    def records(self) -> Iterator[CommentRecord]:
        return (r for r in self._entries.values() if r is not None)

    def placeholders(self) -> List[str]:
        return [cid for cid, r in self._entries.items() if r is None]

    def snapshot(self) -> Dict[str, Optional[CommentRecord]]:
        """Independent copy of every entry, unaffected by later merges."""
        return {cid: copy.copy(r) for cid, r in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)
