"""
Catalog Loader
==============

Reads the company and technology catalogs from the filesystem.

LAYOUT:
=======
    <root>/<companies_folder>/<company-slug>/*.md|*.mdx|*.png|...
    <root>/<technologies_folder>/<tech-slug>/*.md|*.mdx|*.png|...

One subdirectory per entity. Markdown may start with a YAML
frontmatter block delimited by '---' lines.

GUARANTEES:
- Iteration order is sorted, so ids and output are deterministic
- An unreadable file is reported in errors and skipped, never fatal
- A missing folder marks the result incomplete and unreadable paths
  are listed, so callers can tell "absent" from "not read"
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import os
import re

import yaml

from ..config import CatalogConfig
from ..contracts import (
    CompanyCategory,
    Company,
    ContentItem,
    ContentType,
    SourceType,
    Technology,
)


_HEADING = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)


@dataclass(frozen=True)
class FrontmatterDocument:
    metadata: Dict[str, Any]
    body: str
    error: Optional[str] = None


def split_frontmatter(text: str) -> FrontmatterDocument:
    """Separate a leading '---' YAML block from the markdown body."""
    if text.startswith("\ufeff"):
        text = text[1:]
    if not text.startswith("---"):
        return FrontmatterDocument({}, text)

    lines = text.splitlines(keepends=True)
    if lines[0].strip() != "---":
        return FrontmatterDocument({}, text)
    for index in range(1, len(lines)):
        if lines[index].strip() in ("---", "..."):
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1:])
            try:
                data = yaml.safe_load(header)
            except yaml.YAMLError as e:
                return FrontmatterDocument({}, body, error=f"invalid frontmatter: {e}")
            return FrontmatterDocument(data if isinstance(data, dict) else {}, body)
    return FrontmatterDocument({}, text)


def first_heading(body: str) -> Optional[str]:
    match = _HEADING.search(body)
    return match.group(1).strip() if match else None


def title_case_slug(slug: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in slug.split("-"))


def technology_category(slug: str) -> str:
    if "prompt" in slug:
        return "ai-techniques"
    if "agent" in slug:
        return "ai-frameworks"
    return "ai-tools"


def _metadata_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return tuple(_metadata_value(v) for v in value)
    return str(value)


def _timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@dataclass(frozen=True)
class CatalogLoadResult:
    entities: Tuple[Any, ...]
    errors: Tuple[str, ...]
    source: str
    complete: bool = True
    unreadable: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FolderStatus:
    exists: bool
    writable: bool
    count: int
    files: int
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "writable": self.writable,
            "count": self.count,
            "files": self.files,
            "path": self.path,
        }


class CatalogLoader:

    def __init__(self, config: Optional[CatalogConfig] = None, root: Optional[Path] = None):
        self._config = config or CatalogConfig()
        self._root = Path(root if root is not None else self._config.root)

    @property
    def root(self) -> Path:
        return self._root

    def folder(self, source_type: SourceType) -> Path:
        if source_type is SourceType.COMPANY:
            return self._root / self._config.companies_folder
        return self._root / self._config.technologies_folder

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load_companies(self) -> CatalogLoadResult:
        folder = self.folder(SourceType.COMPANY)
        errors: List[str] = []
        unreadable: List[str] = []
        companies = []
        entity_dirs = self._entity_dirs(folder, errors)
        for entity_dir in entity_dirs or ():
            items, frontmatter = self._load_items(
                entity_dir, self._config.companies_folder, errors, unreadable
            )
            enterprise = any(
                str(fm.get("category", "")).lower() == CompanyCategory.ENTERPRISE.value
                for fm in frontmatter
            )
            companies.append(Company(
                id=entity_dir.name,
                name=title_case_slug(entity_dir.name),
                slug=entity_dir.name,
                path=f"{self._config.companies_folder}/{entity_dir.name}",
                category=(CompanyCategory.ENTERPRISE if enterprise else CompanyCategory.STARTUP).value,
                description=self._description(frontmatter) or f"AI company: {entity_dir.name}",
                content=tuple(items),
            ))
        return CatalogLoadResult(
            tuple(companies), tuple(errors), str(folder),
            complete=entity_dirs is not None,
            unreadable=tuple(unreadable),
        )

    def load_technologies(self) -> CatalogLoadResult:
        folder = self.folder(SourceType.TECHNOLOGY)
        errors: List[str] = []
        unreadable: List[str] = []
        technologies = []
        entity_dirs = self._entity_dirs(folder, errors)
        for entity_dir in entity_dirs or ():
            items, frontmatter = self._load_items(
                entity_dir, self._config.technologies_folder, errors, unreadable
            )
            technologies.append(Technology(
                id=entity_dir.name,
                name=title_case_slug(entity_dir.name),
                slug=entity_dir.name,
                path=f"{self._config.technologies_folder}/{entity_dir.name}",
                category=technology_category(entity_dir.name),
                description=self._description(frontmatter) or f"AI technology: {entity_dir.name}",
                content=tuple(items),
            ))
        return CatalogLoadResult(
            tuple(technologies), tuple(errors), str(folder),
            complete=entity_dirs is not None,
            unreadable=tuple(unreadable),
        )

    @staticmethod
    def _entity_dirs(folder: Path, errors: List[str]) -> Optional[List[Path]]:
        """Entity directories, or None when the folder itself can't be listed."""
        if not folder.is_dir():
            errors.append(f"Folder not found: {folder}")
            return None
        try:
            return sorted((p for p in folder.iterdir() if p.is_dir() and not p.name.startswith(".")),
                          key=lambda p: p.name)
        except OSError as e:
            errors.append(f"Error reading {folder}: {e}")
            return None

    @staticmethod
    def _description(frontmatter: List[Dict[str, Any]]) -> Optional[str]:
        for fm in frontmatter:
            if fm.get("description"):
                return str(fm["description"])
        return None

    def _load_items(
        self,
        entity_dir: Path,
        folder_name: str,
        errors: List[str],
        unreadable: List[str]
    ) -> Tuple[List[ContentItem], List[Dict[str, Any]]]:
        items: List[ContentItem] = []
        frontmatter: List[Dict[str, Any]] = []
        markdown = {ext.lower() for ext in self._config.markdown_extensions}
        images = {ext.lower() for ext in self._config.image_extensions}

        try:
            paths = sorted(entity_dir.iterdir(), key=lambda p: p.name)
        except OSError as e:
            relative_dir = f"{folder_name}/{entity_dir.name}"
            errors.append(f"Error reading {relative_dir}: {e}")
            unreadable.append(relative_dir)
            return items, frontmatter

        for path in paths:
            if not path.is_file():
                continue
            ext = path.suffix.lower()
            if ext not in markdown and ext not in images:
                continue
            relative = f"{folder_name}/{entity_dir.name}/{path.name}"
            item_id = f"{entity_dir.name}-{path.stem}"
            try:
                stat = path.stat()
                if ext in markdown:
                    document = split_frontmatter(path.read_text(encoding="utf-8"))
                    if document.error:
                        errors.append(f"{relative}: {document.error}")
                    frontmatter.append(document.metadata)
                    title = document.metadata.get("title") or first_heading(document.body)
                    items.append(ContentItem(
                        id=item_id,
                        name=str(title) if title else path.stem.replace("-", " "),
                        path=relative,
                        type=ContentType.MARKDOWN,
                        content=document.body,
                        metadata=tuple(sorted(
                            (str(k), _metadata_value(v)) for k, v in document.metadata.items()
                        )),
                        created_at=_timestamp(stat.st_ctime),
                        updated_at=_timestamp(stat.st_mtime),
                    ))
                else:
                    items.append(ContentItem(
                        id=item_id,
                        name=path.stem.replace("-", " "),
                        path=relative,
                        type=ContentType.IMAGE,
                        created_at=_timestamp(stat.st_ctime),
                        updated_at=_timestamp(stat.st_mtime),
                    ))
            except (OSError, UnicodeDecodeError) as e:
                errors.append(f"Error reading {relative}: {e}")
                unreadable.append(relative)
        return items, frontmatter

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def folder_status(self, source_type: SourceType) -> FolderStatus:
        folder = self.folder(source_type)
        if not folder.is_dir():
            return FolderStatus(False, False, 0, 0, str(folder))
        entity_dirs = [p for p in folder.iterdir() if p.is_dir() and not p.name.startswith(".")]
        extensions = {e.lower() for e in self._config.markdown_extensions + self._config.image_extensions}
        files = sum(
            1 for d in entity_dirs for p in d.iterdir()
            if p.is_file() and p.suffix.lower() in extensions
        )
        return FolderStatus(
            exists=True,
            writable=os.access(folder, os.W_OK),
            count=len(entity_dirs),
            files=files,
            path=str(folder),
        )

    def catalog_status(self) -> Dict[str, Any]:
        companies = self.folder_status(SourceType.COMPANY)
        technologies = self.folder_status(SourceType.TECHNOLOGY)
        return {
            "companies": companies.to_dict(),
            "technologies": technologies.to_dict(),
            "totalItems": companies.count + technologies.count,
            "ready": companies.exists or technologies.exists,
        }
