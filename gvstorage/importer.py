import logging
import os
import shutil
from typing import Dict, Generator, List, Optional

from PIL import Image as PILImage
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .bundle import ExtractedBundle, extract_bundle
from .conflicts import ConflictAction, ConflictResolver
from .database import AppSetting, Asset, Category, ExportHistory, Tag, ZipMetadata, new_id
from .errors import (
    BackupError, CategoryNotFound, CorruptBundle, ImportFailed, PerAssetImportError,
)
from .identity import ASSET, CATEGORY, IdentityMap, order_categories
from .models import (
    AssetRecord, CategoryRecord, ExportHistoryRecord, ImportPhase, ImportResult,
    ProgressEvent, SettingRecord, TagRecord,
)
from .progress import CancellationToken
from .search import rebuild_search_index
from .utils import delete_asset_and_files, now_ms, slugify

logger = logging.getLogger(__name__)

SKIPPED_BY_USER = "Skipped by user"

IMPORTED = "imported"
SKIPPED = "skipped"


class _StagedFiles:
    """Files of one asset copied out of the bundle into a scratch directory."""

    def __init__(self, directory: str):
        self.directory = directory
        self.content: Optional[str] = None
        self.content_size = 0
        self.thumbnail: Optional[str] = None
        self.gallery: List[str] = []


def _asset_summary(asset: Asset) -> Dict:
    return {
        "id": asset.id,
        "title": asset.title,
        "slug": asset.slug,
        "version": asset.version,
        "fileSizeBytes": asset.file_size,
        "updatedAt": asset.updated_at,
    }


def _is_readable_image(path: str) -> bool:
    try:
        with PILImage.open(path) as img:
            img.verify()
        return True
    except (OSError, SyntaxError, ValueError):
        return False


class LibraryImporter:
    """
    Imports a bundle into a (possibly non-empty) library.

    `import_bundle()` is a generator: iterate it to drive the import and receive
    ProgressEvent objects; its return value is the ImportResult. Categories and
    tags are merged by slug. Assets whose slug already exists are handed to the
    conflict resolver.
    """

    def __init__(self, session_factory, content_store):
        self._session_factory = session_factory
        self._content_store = content_store

    def slug_exists(self, slug: str) -> bool:
        with self._session_factory() as db:
            return db.query(Asset.id).filter(Asset.slug == slug).first() is not None

    def import_bundle(self, bundle_path: str, cancel_token: CancellationToken,
                      conflict_resolver: ConflictResolver) -> Generator[ProgressEvent, None, ImportResult]:
        extract_dir = None
        try:
            # --- Phase 1: extracting ---
            yield ProgressEvent(phase=ImportPhase.EXTRACTING, current_item="Initializing import...")
            cancel_token.raise_if_cancelled()
            extract_dir = self._content_store.create_temp_dir("import")
            bundle = extract_bundle(bundle_path, extract_dir, cancel_token)

            # --- Phase 2: validating ---
            yield ProgressEvent(phase=ImportPhase.VALIDATING, current_item="Validating import data...")
            cancel_token.raise_if_cancelled()
            manifest = bundle.load_manifest()
            ordered_categories = order_categories(manifest.categories)

            total_units = len(manifest.categories) + len(manifest.tags) + len(manifest.assets)
            processed = 0
            identity = IdentityMap()

            # --- Phase 3: categories ---
            yield ProgressEvent(
                phase=ImportPhase.IMPORTING_CATEGORIES, total_units=total_units,
                processed_units=processed, current_item="Importing categories...",
            )
            cancel_token.raise_if_cancelled()
            categories_created = self._import_categories(ordered_categories, identity)
            processed += len(manifest.categories)

            # --- Phase 4: tags ---
            yield ProgressEvent(
                phase=ImportPhase.IMPORTING_TAGS, total_units=total_units,
                processed_units=processed, current_item="Importing tags...",
            )
            cancel_token.raise_if_cancelled()
            tags_created = self._import_tags(manifest.tags)
            processed += len(manifest.tags)

            # --- Phase 5: assets, one at a time; a failed asset doesn't stop the rest ---
            imported = 0
            skipped_slugs: List[str] = []
            errors: Dict[str, str] = {}
            for index, record in enumerate(manifest.assets):
                yield ProgressEvent(
                    phase=ImportPhase.IMPORTING_ASSETS, total_units=total_units,
                    processed_units=processed + index, current_item=record.title,
                )
                cancel_token.raise_if_cancelled()
                try:
                    outcome = self._import_asset(record, identity, bundle, conflict_resolver)
                except PerAssetImportError as e:
                    logger.warning("%s", e)
                    errors[record.slug] = str(e.cause)
                    continue
                if outcome == SKIPPED:
                    logger.info("Asset '%s': %s.", record.slug, SKIPPED_BY_USER)
                    skipped_slugs.append(record.slug)
                else:
                    imported += 1
            processed += len(manifest.assets)

            # --- Phase 6: finalizing ---
            yield ProgressEvent(
                phase=ImportPhase.FINALIZING, total_units=total_units,
                processed_units=processed, current_item="Finalizing import...",
            )
            cancel_token.raise_if_cancelled()
            self._restore_settings(manifest.settings)
            self._restore_export_history(manifest.export_history, identity)
            self._rebuild_search_index()
            self._content_store.remove_tree(extract_dir)

            # --- Phase 7: completed ---
            yield ProgressEvent(
                phase=ImportPhase.COMPLETED, total_units=total_units,
                processed_units=total_units, current_item="Import completed",
            )
            result = ImportResult(
                total_assets=len(manifest.assets),
                imported=imported,
                failed=len(errors),
                skipped=len(skipped_slugs),
                categories_imported=categories_created,
                tags_imported=tags_created,
                errors=errors,
                skipped_slugs=skipped_slugs,
            )
            logger.info(
                "Import finished: %d imported, %d failed, %d skipped.",
                result.imported, result.failed, result.skipped,
            )
            return result
        except BackupError:
            raise
        except Exception as e:
            logger.error("Import of %s failed: %s", bundle_path, e, exc_info=True)
            raise ImportFailed(e) from e
        finally:
            # Covers failure, cancellation and a consumer abandoning the generator.
            self._content_store.remove_tree(extract_dir)

    # --- Categories and tags ---

    def _import_categories(self, categories: List[CategoryRecord], identity: IdentityMap) -> int:
        """Merges categories by slug in one transaction. Expects parents before children."""
        created = 0
        try:
            with self._session_factory() as db, db.begin():
                for record in categories:
                    existing = db.query(Category).filter(Category.slug == record.slug).first()
                    if existing is not None:
                        identity.remember(CATEGORY, record.id, existing.id)
                        continue

                    category = Category(
                        id=new_id(),
                        name=record.name,
                        slug=record.slug,
                        description=record.description or "",
                        parent_id=self._resolve_parent_id(db, record, identity),
                        display_order=record.display_order,
                        asset_count=0,
                        created_at=record.created_at or now_ms(),
                    )
                    db.add(category)
                    db.flush()
                    identity.remember(CATEGORY, record.id, category.id)
                    created += 1
        except Exception as e:
            logger.error("Category import failed, rolled back: %s", e)
            raise ImportFailed(e) from e
        logger.info("Categories: %d created, %d merged.", created, len(categories) - created)
        return created

    def _resolve_parent_id(self, db: Session, record: CategoryRecord, identity: IdentityMap) -> Optional[str]:
        if not record.parent_id:
            return None
        mapped = identity.resolve(CATEGORY, record.parent_id)
        if mapped is not None:
            return mapped
        # Parent not in the bundle; it may already live in the target library.
        if db.get(Category, record.parent_id) is not None:
            return record.parent_id
        logger.warning("Parent '%s' of category '%s' not found; importing it as a root.",
                       record.parent_id, record.slug)
        return None

    def _import_tags(self, tags: List[TagRecord]) -> int:
        """Inserts tags whose slug is not taken yet, in one transaction."""
        created = 0
        try:
            with self._session_factory() as db, db.begin():
                for record in tags:
                    if db.query(Tag.id).filter(Tag.slug == record.slug).first() is not None:
                        continue
                    db.add(Tag(id=new_id(), name=record.name, slug=record.slug,
                               created_at=record.created_at or now_ms()))
                    db.flush()
                    created += 1
        except Exception as e:
            logger.error("Tag import failed, rolled back: %s", e)
            raise ImportFailed(e) from e
        logger.info("Tags: %d created, %d already present.", created, len(tags) - created)
        return created

    # --- Assets ---

    def _import_asset(self, record: AssetRecord, identity: IdentityMap, bundle: ExtractedBundle,
                      conflict_resolver: ConflictResolver) -> str:
        """
        Imports one asset. Files are staged first, the rows are committed, and
        only then are the files moved into permanent storage. Any failure is
        raised as PerAssetImportError after the staging directory is removed.
        """
        slug = record.slug
        staged = None
        try:
            with self._session_factory() as db:
                existing = db.query(Asset).filter(Asset.slug == slug).first()
                existing_summary = _asset_summary(existing) if existing is not None else None

            # The session is closed while the resolver runs; it may wait on a person.
            if existing_summary is not None:
                resolution = conflict_resolver(slug, record.title, existing_summary, record.summary())
                if resolution.action == ConflictAction.SKIP:
                    return SKIPPED
                if resolution.action == ConflictAction.OVERWRITE:
                    with self._session_factory() as db:
                        existing = db.get(Asset, existing_summary["id"])
                        if existing is not None:
                            delete_asset_and_files(db, self._content_store, existing)
                elif resolution.action == ConflictAction.RENAME:
                    new_slug = (resolution.new_slug or "").strip()
                    if not new_slug:
                        raise ValueError("Rename selected but no new slug provided")
                    if self.slug_exists(new_slug):
                        raise ValueError(f"Slug '{new_slug}' already exists")
                    slug = new_slug

            category_id = identity.resolve(CATEGORY, record.category_id)
            if category_id is None:
                raise CategoryNotFound(record.category_id, record.slug)
            with self._session_factory() as db:
                category = db.get(Category, category_id)
                if category is None:
                    raise CategoryNotFound(category_id, record.slug)
                category_slug = category.slug

            asset_id = new_id()
            staged = self._stage_files(record, bundle, asset_id)
            self._insert_asset_rows(record, asset_id, slug, category_id, staged.content_size)
            self._persist_files(asset_id, category_slug, staged)
            identity.remember(ASSET, record.id, asset_id)
            return IMPORTED
        except Exception as e:
            raise PerAssetImportError(record.slug, e) from e
        finally:
            if staged is not None:
                self._content_store.remove_tree(staged.directory)

    def _stage_files(self, record: AssetRecord, bundle: ExtractedBundle, asset_id: str) -> _StagedFiles:
        staged = _StagedFiles(self._content_store.staging_dir(asset_id))
        try:
            if not record.content_path:
                raise CorruptBundle(f"Asset '{record.slug}' has no content file")
            staged.content = os.path.join(staged.directory, "content.zip")
            shutil.copyfile(bundle.resolve(record.content_path), staged.content)
            staged.content_size = os.path.getsize(staged.content)
            if record.file_size_bytes and staged.content_size != record.file_size_bytes:
                logger.warning("Asset '%s': content is %d bytes, manifest says %d; keeping the actual size.",
                               record.slug, staged.content_size, record.file_size_bytes)

            # Thumbnails are optional: a missing or unreadable image is dropped with a warning.
            if record.thumbnail_path:
                staged.thumbnail = self._stage_image(bundle, record.thumbnail_path,
                                                     os.path.join(staged.directory, "main.jpg"), record.slug)
            for index, gallery_path in enumerate(record.gallery_paths, start=1):
                path = self._stage_image(bundle, gallery_path,
                                         os.path.join(staged.directory, f"gallery_{index}.jpg"), record.slug)
                if path is not None:
                    staged.gallery.append(path)
        except Exception:
            self._content_store.remove_tree(staged.directory)
            raise
        return staged

    def _stage_image(self, bundle: ExtractedBundle, relative_path: str, dest_path: str, slug: str) -> Optional[str]:
        try:
            source_path = bundle.resolve(relative_path)
        except CorruptBundle as e:
            logger.warning("Asset '%s': %s", slug, e)
            return None
        if not _is_readable_image(source_path):
            logger.warning("Asset '%s': '%s' is not a readable image, skipping it.", slug, relative_path)
            return None
        shutil.copyfile(source_path, dest_path)
        return dest_path

    def _insert_asset_rows(self, record: AssetRecord, asset_id: str, slug: str, category_id: str,
                           file_size: int) -> None:
        """One transaction: asset row with empty paths, ZIP metadata, tag links, category counter."""
        now = now_ms()
        with self._session_factory() as db, db.begin():
            asset = Asset(
                id=asset_id,
                title=record.title,
                slug=slug,
                description=record.description or "",
                short_description=record.short_description,
                category_id=category_id,
                version=record.version,
                last_updated=record.last_updated,
                created_at=record.created_at or now,
                updated_at=record.updated_at or now,
                file_size=file_size,
                zip_path="",
                thumbnail_path=None,
                gallery_paths=[],
                demo_url=record.demo_url,
                features=record.features,
                is_featured=record.is_featured,
                downloads_count=record.downloads_count,
            )
            db.add(asset)

            meta = record.zip_entry_metadata
            if meta is not None:
                db.add(ZipMetadata(
                    id=new_id(),
                    asset_id=asset_id,
                    entry_count=meta.entry_count,
                    compression_ratio=meta.compression_ratio,
                    has_directory_structure=meta.has_directory_structure,
                    original_name=meta.original_name,
                ))

            # Tags were imported in the previous phase; unknown ones are ignored.
            for tag_name in record.tags:
                tag = db.query(Tag).filter(or_(Tag.slug == slugify(tag_name), Tag.name == tag_name)).first()
                if tag is not None and tag not in asset.tags:
                    asset.tags.append(tag)

            db.query(Category).filter(Category.id == category_id).update(
                {Category.asset_count: Category.asset_count + 1}, synchronize_session=False
            )

    def _persist_files(self, asset_id: str, category_slug: str, staged: _StagedFiles) -> None:
        """
        Moves staged files into permanent storage and records their paths. If this
        fails, the just-committed asset is removed again so no row points at
        missing files and no file is left without a row.
        """
        try:
            zip_path = self._content_store.save_asset(staged.content, asset_id, category_slug)
            thumbnail_path = None
            if staged.thumbnail is not None:
                thumbnail_path = self._content_store.save_thumbnail(staged.thumbnail, asset_id)
            gallery_paths = [
                self._content_store.save_gallery_image(path, asset_id, index)
                for index, path in enumerate(staged.gallery, start=1)
            ]
            with self._session_factory() as db, db.begin():
                db.query(Asset).filter(Asset.id == asset_id).update(
                    {
                        Asset.zip_path: zip_path,
                        Asset.thumbnail_path: thumbnail_path,
                        Asset.gallery_paths: gallery_paths,
                    },
                    synchronize_session=False,
                )
        except Exception:
            self._discard_asset(asset_id)
            raise

    def _discard_asset(self, asset_id: str) -> None:
        try:
            with self._session_factory() as db:
                asset = db.get(Asset, asset_id)
                if asset is not None:
                    delete_asset_and_files(db, self._content_store, asset)
                else:
                    self._content_store.delete_asset_files(asset_id)
        except Exception as e:
            logger.warning("Could not roll back partially imported asset %s: %s", asset_id, e)

    # --- Finalizing (best-effort) ---

    def _restore_settings(self, settings: List[SettingRecord]) -> None:
        """Adds settings the target doesn't have yet; existing values win."""
        if not settings:
            return
        try:
            with self._session_factory() as db, db.begin():
                for record in settings:
                    if db.get(AppSetting, record.key) is None:
                        db.add(AppSetting(key=record.key, value=record.value,
                                          updated_at=record.updated_at or now_ms()))
        except Exception as e:
            logger.warning("Could not restore app settings: %s", e)

    def _restore_export_history(self, history: List[ExportHistoryRecord], identity: IdentityMap) -> None:
        """Copies history entries of assets imported in this run, remapped to their new ids."""
        entries = [(record, identity.resolve(ASSET, record.asset_id)) for record in history]
        entries = [(record, asset_id) for record, asset_id in entries if asset_id is not None]
        if not entries:
            return
        try:
            with self._session_factory() as db, db.begin():
                for record, asset_id in entries:
                    db.add(ExportHistory(
                        id=new_id(),
                        asset_id=asset_id,
                        export_path=record.export_path,
                        exported_at=record.exported_at,
                        export_type=record.export_type,
                    ))
        except Exception as e:
            logger.warning("Could not restore export history: %s", e)

    def _rebuild_search_index(self) -> None:
        try:
            with self._session_factory() as db:
                rebuild_search_index(db)
        except Exception as e:
            logger.warning("Failed to rebuild search index: %s", e)
