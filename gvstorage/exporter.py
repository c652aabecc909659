import logging
import os
from typing import Generator, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from .bundle import MANIFEST_PATH, BundleFile, is_safe_entry_name, write_bundle
from .database import AppSetting, Asset, Category, ExportHistory, Tag
from .errors import Cancelled, ExportFailed, InsufficientSpace
from .estimator import DiskSpaceEstimator, estimate_export_size
from .models import (
    AssetRecord, BundleManifest, CategoryRecord, ExportHistoryRecord, ExportPhase,
    ExportResult, ManifestMetadata, ProgressEvent, SettingRecord, TagRecord,
    ZipEntryMetadata,
)
from .progress import CancellationToken
from .utils import now_ms

logger = logging.getLogger(__name__)


class LibraryExporter:
    """
    Exports the whole library (metadata and files) into one bundle.

    `export()` is a generator: iterate it to drive the export and receive
    ProgressEvent objects; its return value is the ExportResult. The library is
    only read, never modified.
    """

    def __init__(self, session_factory, content_store, estimator: Optional[DiskSpaceEstimator] = None,
                 app_version: Optional[str] = None):
        self._session_factory = session_factory
        self._content_store = content_store
        self._estimator = estimator or DiskSpaceEstimator()
        self._app_version = app_version

    def export(self, destination_path: str,
               cancel_token: CancellationToken) -> Generator[ProgressEvent, None, ExportResult]:
        destination_path = os.path.abspath(destination_path)
        # The bundle is written next to the destination and renamed into place at
        # the end, so the destination path never holds a half-written archive.
        partial_path = f"{destination_path}.partial"
        completed = False

        try:
            # --- Phase 1: preparing ---
            yield ProgressEvent(phase=ExportPhase.PREPARING, current_item="Initializing export...")
            cancel_token.raise_if_cancelled()

            with self._session_factory() as db:
                yield ProgressEvent(phase=ExportPhase.PREPARING, current_item="Calculating export size...")
                projected_bytes = estimate_export_size(db)
                if not self._estimator.has_space(destination_path, projected_bytes):
                    raise InsufficientSpace(
                        self._estimator.required_bytes(projected_bytes),
                        self._estimator.available_bytes(destination_path),
                    )
                cancel_token.raise_if_cancelled()

                yield ProgressEvent(phase=ExportPhase.PREPARING, current_item="Generating database export...")
                manifest = self._build_manifest(db)
            logger.info(
                "Export snapshot: %d categories, %d tags, %d assets.",
                len(manifest.categories), len(manifest.tags), len(manifest.assets),
            )

            # --- Phase 2: collecting ---
            yield ProgressEvent(phase=ExportPhase.COLLECTING, current_item="Collecting asset files...")
            cancel_token.raise_if_cancelled()
            files, warnings = self._collect_files(manifest)
            total_units = len(files) + 2  # + database.json and README.txt

            # --- Phase 3: archiving ---
            yield ProgressEvent(phase=ExportPhase.ARCHIVING, total_units=total_units, current_item=MANIFEST_PATH)
            cancel_token.raise_if_cancelled()
            os.makedirs(os.path.dirname(destination_path), exist_ok=True)

            processed = 0
            writer = write_bundle(partial_path, manifest, files)
            try:
                for entry_name in writer:
                    processed += 1
                    yield ProgressEvent(
                        phase=ExportPhase.ARCHIVING,
                        total_units=total_units,
                        processed_units=processed,
                        current_item=entry_name,
                    )
                    cancel_token.raise_if_cancelled()
            finally:
                writer.close()

            os.replace(partial_path, destination_path)
            completed = True

            # --- Phase 4: completed ---
            yield ProgressEvent(
                phase=ExportPhase.COMPLETED,
                total_units=total_units,
                processed_units=total_units,
                current_item="Export completed successfully",
            )
            logger.info("Export written to %s (%d files, %d warnings).", destination_path, len(files), len(warnings))
            return ExportResult(
                archive_path=destination_path,
                asset_count=len(manifest.assets),
                file_count=len(files),
                size_bytes=os.path.getsize(destination_path),
                warnings=warnings,
            )
        except (Cancelled, InsufficientSpace):
            raise
        except Exception as e:
            logger.error("Export to %s failed: %s", destination_path, e, exc_info=True)
            raise ExportFailed(e) from e
        finally:
            if not completed:
                self._cleanup_partial_export(partial_path)

    # --- Manifest ---

    def _build_manifest(self, db: Session) -> BundleManifest:
        categories = [
            CategoryRecord(
                id=c.id, name=c.name, slug=c.slug, description=c.description,
                parent_id=c.parent_id, display_order=c.display_order, created_at=c.created_at,
            )
            for c in db.query(Category).order_by(Category.display_order, Category.name, Category.id).all()
        ]
        tags = [
            TagRecord(id=t.id, name=t.name, slug=t.slug, created_at=t.created_at)
            for t in db.query(Tag).order_by(Tag.name, Tag.id).all()
        ]

        assets = []
        query = (
            db.query(Asset)
            .options(selectinload(Asset.tags), selectinload(Asset.zip_metadata), selectinload(Asset.category))
            .order_by(Asset.created_at.desc(), Asset.id)
        )
        for asset in query.all():
            zip_meta = None
            if asset.zip_metadata is not None:
                zip_meta = ZipEntryMetadata(
                    entry_count=asset.zip_metadata.entry_count,
                    compression_ratio=asset.zip_metadata.compression_ratio,
                    has_directory_structure=asset.zip_metadata.has_directory_structure,
                    original_name=asset.zip_metadata.original_name,
                )
            assets.append(AssetRecord(
                id=asset.id,
                title=asset.title,
                slug=asset.slug,
                description=asset.description or "",
                short_description=asset.short_description,
                category_id=asset.category_id,
                category_slug=asset.category.slug if asset.category else None,
                version=asset.version,
                last_updated=asset.last_updated,
                tags=sorted(tag.name for tag in asset.tags),
                features=list(asset.features or []),
                file_size_bytes=asset.file_size or 0,
                content_path=asset.zip_path or "",
                thumbnail_path=asset.thumbnail_path or None,
                gallery_paths=list(asset.gallery_paths or []),
                is_featured=bool(asset.is_featured),
                downloads_count=asset.downloads_count or 0,
                demo_url=asset.demo_url,
                created_at=asset.created_at,
                updated_at=asset.updated_at,
                zip_entry_metadata=zip_meta,
            ))

        history = [
            ExportHistoryRecord(
                id=h.id, asset_id=h.asset_id, export_path=h.export_path,
                exported_at=h.exported_at, export_type=h.export_type,
            )
            for h in db.query(ExportHistory).order_by(ExportHistory.exported_at.desc(), ExportHistory.id).all()
        ]
        settings = [
            SettingRecord(key=s.key, value=s.value, updated_at=s.updated_at)
            for s in db.query(AppSetting).order_by(AppSetting.key).all()
        ]

        return BundleManifest(
            metadata=ManifestMetadata(
                app_version=self._app_version,
                exported_at=now_ms(),
                total_assets=len(assets),
                total_categories=len(categories),
                total_tags=len(tags),
                total_size_bytes=sum(a.file_size_bytes for a in assets),
            ),
            categories=categories,
            tags=tags,
            assets=assets,
            export_history=history,
            settings=settings,
        )

    # --- Files ---

    def _collect_files(self, manifest: BundleManifest) -> Tuple[List[BundleFile], List[str]]:
        """
        Every content file, thumbnail and gallery image referenced by the
        manifest that exists on disk. Missing or unusable paths are skipped and
        reported as warnings; metadata is exported regardless.
        """
        files: List[BundleFile] = []
        warnings: List[str] = []
        seen = set()

        for asset in manifest.assets:
            referenced = [("content file", asset.content_path)]
            if asset.thumbnail_path:
                referenced.append(("thumbnail", asset.thumbnail_path))
            referenced.extend(("gallery image", path) for path in asset.gallery_paths)

            for kind, relative_path in referenced:
                if not relative_path:
                    warnings.append(f"{asset.slug}: no {kind} recorded")
                    continue
                if relative_path in seen:
                    continue
                if not is_safe_entry_name(relative_path):
                    warnings.append(f"{asset.slug}: {kind} has an unusable path '{relative_path}'")
                    continue
                if not self._content_store.exists(relative_path):
                    warnings.append(f"{asset.slug}: {kind} missing on disk '{relative_path}'")
                    continue
                seen.add(relative_path)
                files.append(BundleFile(relative_path, self._content_store.absolute_path(relative_path)))

        for warning in warnings:
            logger.warning("Export: skipping %s", warning)
        return files, warnings

    def _cleanup_partial_export(self, partial_path: str) -> None:
        try:
            if os.path.exists(partial_path):
                os.remove(partial_path)
        except OSError as e:
            logger.warning("Could not delete partial export %s. Reason: %s", partial_path, e)
