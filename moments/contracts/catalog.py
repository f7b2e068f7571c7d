"""
Catalog Contracts
=================

Immutable types for the company / technology catalogs loaded from disk.

INVARIANT: ContentItem identity is (id, path, updated_at, content).
Any change to those fields must produce a different content hash.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .base import SourceType, format_timestamp, parse_timestamp, utc_now


class ContentType(Enum):
    MARKDOWN = "markdown"
    IMAGE = "image"


class CompanyCategory(Enum):
    STARTUP = "startup"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class ContentItem:
    """A single file belonging to a catalog entity."""
    id: str
    name: str
    path: str
    type: ContentType
    created_at: datetime
    updated_at: datetime
    content: Optional[str] = None
    metadata: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def is_analyzable(self) -> bool:
        """Only markdown with a non-blank body goes to the extractor."""
        return self.type is ContentType.MARKDOWN and bool(self.content and self.content.strip())

    def metadata_dict(self) -> Dict[str, Any]:
        return dict(self.metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.type.value,
            "content": self.content,
            "metadata": self.metadata_dict(),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> ContentItem:
        now = utc_now()
        return ContentItem(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            path=str(data.get("path", "")),
            type=ContentType(data.get("type", "markdown")),
            content=data.get("content"),
            metadata=tuple(sorted((data.get("metadata") or {}).items())),
            created_at=parse_timestamp(data.get("createdAt")) or now,
            updated_at=parse_timestamp(data.get("updatedAt")) or now,
        )


@dataclass(frozen=True)
class CatalogEntity:
    """
    Shared shape of companies and technologies.

    `category` is a CompanyCategory value for companies and a free-form
    slug (ai-frameworks, ai-tools, ...) for technologies.
    """
    id: str
    name: str
    slug: str
    path: str
    category: str
    description: Optional[str] = None
    content: Tuple[ContentItem, ...] = field(default_factory=tuple)

    @property
    def source_type(self) -> SourceType:
        raise NotImplementedError

    @property
    def markdown_items(self) -> Tuple[ContentItem, ...]:
        return tuple(item for item in self.content if item.type is ContentType.MARKDOWN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "path": self.path,
            "category": self.category,
            "description": self.description,
            "content": [item.to_dict() for item in self.content],
        }


@dataclass(frozen=True)
class Company(CatalogEntity):

    @property
    def source_type(self) -> SourceType:
        return SourceType.COMPANY

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Company:
        return Company(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            slug=str(data.get("slug", data["id"])),
            path=str(data.get("path", "")),
            category=CompanyCategory(data.get("category", "startup")).value,
            description=data.get("description"),
            content=tuple(ContentItem.from_dict(c) for c in data.get("content") or []),
        )


@dataclass(frozen=True)
class Technology(CatalogEntity):

    @property
    def source_type(self) -> SourceType:
        return SourceType.TECHNOLOGY

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Technology:
        return Technology(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            slug=str(data.get("slug", data["id"])),
            path=str(data.get("path", "")),
            category=str(data.get("category", "ai-tools")),
            description=data.get("description"),
            content=tuple(ContentItem.from_dict(c) for c in data.get("content") or []),
        )


@dataclass(frozen=True)
class ContentHashRecord:
    """Last analysed state of a content item."""
    content_id: str
    file_path: str
    last_modified: datetime
    content_hash: str
    source_type: SourceType
    source_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentId": self.content_id,
            "filePath": self.file_path,
            "lastModified": format_timestamp(self.last_modified),
            "contentHash": self.content_hash,
            "sourceType": self.source_type.value,
            "sourceName": self.source_name,
        }
