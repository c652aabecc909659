"""Pydantic models for bundle manifests, progress events and operation results.

Manifest records mirror ``database.json`` inside a bundle. Keys are camelCase
on the wire and snake_case in Python; unknown keys are ignored so that newer
bundles with extra fields still load.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .utils import is_valid_slug

FORMAT_VERSION = 1


class ManifestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _check_slug(value: str) -> str:
    # Category slugs become directory names in the content store.
    if not is_valid_slug(value):
        raise ValueError(f"{value!r} is not a valid slug")
    return value


class CategoryRecord(ManifestModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    display_order: int = 0
    created_at: Optional[int] = None

    _valid_slug = field_validator("slug")(_check_slug)


class TagRecord(ManifestModel):
    id: str
    name: str
    slug: str
    created_at: Optional[int] = None


class ZipEntryMetadata(ManifestModel):
    entry_count: int = 0
    compression_ratio: Optional[float] = None
    has_directory_structure: bool = True
    original_name: Optional[str] = None


class AssetRecord(ManifestModel):
    id: str
    title: str
    slug: str
    description: str = ""
    short_description: Optional[str] = None
    category_id: str
    category_slug: Optional[str] = None
    version: Optional[str] = None
    last_updated: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    features: List[Dict[str, Any]] = Field(default_factory=list)
    file_size_bytes: int = 0
    content_path: str
    thumbnail_path: Optional[str] = None
    gallery_paths: List[str] = Field(default_factory=list)
    is_featured: bool = False
    downloads_count: int = 0
    demo_url: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    zip_entry_metadata: Optional[ZipEntryMetadata] = None

    _valid_slug = field_validator("slug")(_check_slug)

    def summary(self) -> Dict[str, Any]:
        """Short description handed to conflict resolvers."""
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "version": self.version,
            "fileSizeBytes": self.file_size_bytes,
            "updatedAt": self.updated_at,
        }


class ExportHistoryRecord(ManifestModel):
    id: str
    asset_id: str
    export_path: str
    exported_at: int
    export_type: str


class SettingRecord(ManifestModel):
    key: str
    value: str
    updated_at: Optional[int] = None


class ManifestMetadata(ManifestModel):
    format_version: int = FORMAT_VERSION
    app_version: Optional[str] = None
    exported_at: int
    total_assets: int = 0
    total_categories: int = 0
    total_tags: int = 0
    total_size_bytes: int = 0


class BundleManifest(ManifestModel):
    metadata: ManifestMetadata
    categories: List[CategoryRecord]
    tags: List[TagRecord]
    assets: List[AssetRecord]
    export_history: List[ExportHistoryRecord] = Field(default_factory=list)
    settings: List[SettingRecord] = Field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False)


# --- Progress ---

class ExportPhase(str, Enum):
    PREPARING = "preparing"
    COLLECTING = "collecting"
    ARCHIVING = "archiving"
    COMPLETED = "completed"


class ImportPhase(str, Enum):
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    IMPORTING_CATEGORIES = "importing_categories"
    IMPORTING_TAGS = "importing_tags"
    IMPORTING_ASSETS = "importing_assets"
    FINALIZING = "finalizing"
    COMPLETED = "completed"


class ProgressEvent(BaseModel):
    """One progress tick from an export or import.

    Attributes:
        phase: Current pipeline phase.
        total_units: Units of work known so far (files on export, manifest items on import).
        processed_units: Units finished so far.
        current_item: Label of the entry being worked on.
        error_message: Set when the event reports a recoverable problem.
    """

    phase: Union[ExportPhase, ImportPhase]
    total_units: int = 0
    processed_units: int = 0
    current_item: str = ""
    error_message: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def percentage(self) -> float:
        if self.total_units == 0:
            return 0.0
        return self.processed_units / self.total_units

    @property
    def is_complete(self) -> bool:
        return self.phase.value == "completed"


# --- Results ---

class ExportResult(BaseModel):
    archive_path: str
    asset_count: int
    file_count: int
    size_bytes: int = 0
    # Files referenced by the store but missing on disk.
    warnings: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class ImportResult(BaseModel):
    total_assets: int
    imported: int
    failed: int
    skipped: int
    categories_imported: int = 0
    tags_imported: int = 0
    # slug -> message for assets that failed to import
    errors: Dict[str, str] = Field(default_factory=dict)
    skipped_slugs: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @property
    def has_partial_success(self) -> bool:
        return self.imported > 0 and self.failed > 0

    @property
    def is_full_success(self) -> bool:
        return self.imported > 0 and self.failed == 0
