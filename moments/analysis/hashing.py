"""
Content Hashing and Change Detection
====================================

Decides which catalog items need (re-)extraction.

CLASSIFICATION:
===============
- new:       content id never analysed before
- modified:  content id known, digest differs
- unchanged: content id known, digest equal
- removed:   tracked id in the run's scope, absent from the input
             and not covered by a CatalogGaps entry

INVARIANTS:
- Unchanged items are never sent to extraction
- Hash records are committed only for successfully extracted items,
  so a failed item is retried on the next run
- Only analysable items (markdown with a body) take part
- Content the catalog could not read is unknown, never removed
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
import hashlib

from ..contracts import (
    AnalysisScope,
    ContentHashRecord,
    ContentItem,
    MomentSource,
    PivotalMoment,
    SourceType,
    format_timestamp,
)
from ..storage import HashFileStore
from .correlation import window_key


# Prefix of the body that participates in the digest
HASHED_BODY_CHARS = 1000

WorkItem = Tuple[ContentItem, MomentSource]


def compute_content_hash(item: ContentItem) -> str:
    """
    Digest over id, path, modification time and the first
    HASHED_BODY_CHARS characters of the body.
    """
    updated = format_timestamp(item.updated_at) or ""
    body = (item.content or "")[:HASHED_BODY_CHARS]
    source = f"{item.id}:{item.path}:{updated}:{body}"
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def make_hash_record(item: ContentItem, source: MomentSource) -> ContentHashRecord:
    return ContentHashRecord(
        content_id=item.id,
        file_path=item.path,
        last_modified=item.updated_at,
        content_hash=compute_content_hash(item),
        source_type=source.type,
        source_name=source.name,
    )


@dataclass(frozen=True)
class CatalogGaps:
    """
    Parts of the catalog that could not be read in this run.

    A whole source type is listed when its folder is missing or
    unlistable; paths name single files or entity directories
    (relative to the catalog root) that failed to read.
    """
    source_types: FrozenSet[SourceType] = frozenset()
    paths: FrozenSet[str] = frozenset()
    errors: Tuple[str, ...] = ()

    def covers(self, record: ContentHashRecord) -> bool:
        if record.source_type in self.source_types:
            return True
        for path in self.paths:
            prefix = path.rstrip("/")
            if record.file_path == prefix or record.file_path.startswith(prefix + "/"):
                return True
        return False


@dataclass(frozen=True)
class ChangeAssessment:
    """Outcome of comparing the catalog against the tracked hashes."""
    new_items: Tuple[WorkItem, ...] = ()
    modified_items: Tuple[WorkItem, ...] = ()
    unchanged_items: Tuple[WorkItem, ...] = ()
    removed_ids: Tuple[str, ...] = ()
    affected_moment_ids: FrozenSet[str] = frozenset()
    affected_windows: FrozenSet[str] = frozenset()

    @property
    def changed_items(self) -> Tuple[WorkItem, ...]:
        return self.new_items + self.modified_items

    @property
    def has_changes(self) -> bool:
        return bool(self.new_items or self.modified_items or self.removed_ids)


@dataclass(frozen=True)
class HashStats:
    tracked_content: int
    last_update: Optional[datetime]


class ContentHashStore:
    """
    In-memory view of the content-hash map, backed by HashFileStore.

    The map is loaded once at construction; every mutation is written
    through to the backing store.
    """

    def __init__(self, backend: HashFileStore):
        self._backend = backend
        self._records: Dict[str, ContentHashRecord] = backend.load()

    def get(self, content_id: str) -> Optional[ContentHashRecord]:
        return self._records.get(content_id)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, content_id: str) -> bool:
        return content_id in self._records

    def assess(
        self,
        work: Sequence[WorkItem],
        existing_moments: Iterable[PivotalMoment] = (),
        window_days: int = 14,
        scope: AnalysisScope = AnalysisScope.ALL,
        gaps: Optional[CatalogGaps] = None
    ) -> ChangeAssessment:
        gaps = gaps or CatalogGaps()
        new_items: List[WorkItem] = []
        modified_items: List[WorkItem] = []
        unchanged_items: List[WorkItem] = []
        seen: Set[str] = set()

        for item, source in work:
            if not item.is_analyzable or item.id in seen:
                continue
            seen.add(item.id)
            existing = self._records.get(item.id)
            if existing is None:
                new_items.append((item, source))
            elif existing.content_hash != compute_content_hash(item):
                modified_items.append((item, source))
            else:
                unchanged_items.append((item, source))

        removed_ids = sorted(
            content_id for content_id, record in self._records.items()
            if content_id not in seen
            and scope.includes(record.source_type)
            and not gaps.covers(record)
        )

        stale = {item.id for item, _ in new_items + modified_items} | set(removed_ids)
        affected_ids: Set[str] = set()
        affected_windows: Set[str] = set()
        for moment in existing_moments:
            if moment.source.content_id in stale:
                affected_ids.add(moment.id)
                affected_windows.add(window_key(moment.extracted_at, window_days))

        return ChangeAssessment(
            new_items=tuple(new_items),
            modified_items=tuple(modified_items),
            unchanged_items=tuple(unchanged_items),
            removed_ids=tuple(removed_ids),
            affected_moment_ids=frozenset(affected_ids),
            affected_windows=frozenset(affected_windows),
        )

    def commit(self, records: Iterable[ContentHashRecord]) -> int:
        records = list(records)
        for record in records:
            self._records[record.content_id] = record
        return self._backend.upsert(records)

    def forget(self, content_ids: Iterable[str]) -> int:
        ids = [content_id for content_id in content_ids if content_id in self._records]
        for content_id in ids:
            del self._records[content_id]
        return self._backend.delete(ids)

    def clear(self):
        self._records.clear()
        self._backend.clear()

    def stats(self) -> HashStats:
        last_update = None
        if self._records:
            last_update = max(r.last_modified for r in self._records.values())
        return HashStats(tracked_content=len(self._records), last_update=last_update)
