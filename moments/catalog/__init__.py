"""
Catalog Layer

RESPONSIBILITY: Load company / technology catalogs from disk
OUTPUTS: Company, Technology (moments.contracts)
"""

from .loader import (
    CatalogLoadResult,
    CatalogLoader,
    FolderStatus,
    first_heading,
    split_frontmatter,
    technology_category,
    title_case_slug,
)

__all__ = [
    'CatalogLoadResult',
    'CatalogLoader',
    'FolderStatus',
    'first_heading',
    'split_frontmatter',
    'technology_category',
    'title_case_slug',
]
