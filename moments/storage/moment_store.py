"""
Moment File Storage

One JSON document per moment under the moments folder.

PRINCIPLES:
===========
1. Writes are atomic (temp file + os.replace)
2. File names are derived from moment ids, never from titles
3. Unreadable files are reported, not silently dropped
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import json
import os
import re
import tempfile

from ..contracts import PivotalMoment
from .hash_store import StorageError


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def moment_filename(moment_id: str) -> str:
    safe = _UNSAFE.sub("_", moment_id).strip("._") or "moment"
    return f"{safe}.json"


@dataclass(frozen=True)
class StoreStatus:
    exists: bool
    writable: bool
    count: int
    path: str
    last_modified: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "exists": self.exists,
            "writable": self.writable,
            "count": self.count,
            "path": self.path,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }


@dataclass(frozen=True)
class LoadResult:
    moments: Tuple[PivotalMoment, ...]
    errors: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SaveResult:
    saved: Tuple[str, ...]
    failed: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.failed


class MomentFileStore:
    """Filesystem store: {directory}/{moment id}.json."""

    def __init__(self, directory: Path):
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _ensure_directory(self):
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create moments folder {self._directory}: {e}") from e

    def _files(self) -> List[Path]:
        if not self._directory.is_dir():
            return []
        return sorted(p for p in self._directory.glob("*.json") if p.is_file())

    def load_all(self) -> LoadResult:
        moments: List[PivotalMoment] = []
        errors: List[str] = []
        for path in self._files():
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    moments.append(PivotalMoment.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                errors.append(f"{path.name}: {e}")
        moments.sort(key=lambda m: (m.extracted_at, m.id))
        return LoadResult(moments=tuple(moments), errors=tuple(errors))

    def get(self, moment_id: str) -> Optional[PivotalMoment]:
        path = self._directory / moment_filename(moment_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return PivotalMoment.from_dict(json.load(f))

    def save(self, moment: PivotalMoment):
        self._ensure_directory()
        target = self._directory / moment_filename(moment.id)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(moment.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def save_all(self, moments: Iterable[PivotalMoment], prune: bool = True) -> SaveResult:
        """
        Write every moment; with prune, delete files of moments not in the set.
        """
        self._ensure_directory()
        saved: List[str] = []
        failed: List[str] = []
        keep = set()
        for moment in moments:
            keep.add(moment_filename(moment.id))
            try:
                self.save(moment)
                saved.append(moment.id)
            except OSError:
                failed.append(moment.id)

        removed: List[str] = []
        if prune:
            for path in self._files():
                if path.name not in keep:
                    try:
                        path.unlink()
                        removed.append(path.stem)
                    except OSError:
                        failed.append(path.stem)
        return SaveResult(saved=tuple(saved), failed=tuple(failed), removed=tuple(removed))

    def delete(self, moment_id: str) -> bool:
        path = self._directory / moment_filename(moment_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def clear(self) -> int:
        count = 0
        for path in self._files():
            path.unlink()
            count += 1
        return count

    def status(self) -> StoreStatus:
        exists = self._directory.is_dir()
        files = self._files()
        last_modified = None
        if files:
            latest = max(p.stat().st_mtime for p in files)
            last_modified = datetime.fromtimestamp(latest, tz=timezone.utc)
        target = self._directory if exists else self._directory.parent
        writable = target.exists() and os.access(target, os.W_OK)
        return StoreStatus(
            exists=exists,
            writable=writable,
            count=len(files),
            path=str(self._directory),
            last_modified=last_modified,
        )
