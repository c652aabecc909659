"""
Reading and writing library bundles.

A bundle is a single ZIP container:

    database.json                       the manifest (see models.BundleManifest)
    README.txt                          human-readable summary
    assets/<category-slug>/<id>.zip     asset archives
    thumbnails/<id>/main.jpg            thumbnails and gallery images

Entry names are always forward-slash relative paths. Entries are written in a
fixed order with a fixed timestamp, so exporting an unchanged library twice
yields identical archives apart from the export time recorded in the manifest.
"""

import json
import logging
import os
import posixpath
import shutil
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional

from pydantic import ValidationError

from .errors import Cancelled, CorruptBundle, InvalidArchive, InvalidManifest
from .models import BundleManifest
from .utils import format_bytes

logger = logging.getLogger(__name__)

MANIFEST_PATH = "database.json"
README_PATH = "README.txt"
ASSETS_PREFIX = "assets/"
THUMBNAILS_PREFIX = "thumbnails/"
REQUIRED_MANIFEST_KEYS = ("metadata", "categories", "tags", "assets")

# Earliest timestamp a ZIP header can hold.
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
COPY_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class BundleFile:
    """A file on disk and the name it gets inside the bundle."""
    archive_name: str
    source_path: str


def is_safe_entry_name(name: str) -> bool:
    """True for relative, forward-slash names that stay inside the extraction root."""
    if not name or name.startswith("/") or "\\" in name or ":" in name:
        return False
    return ".." not in posixpath.normpath(name).split("/")


def _entry_info(name: str, compress_type: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=FIXED_DATE_TIME)
    info.compress_type = compress_type
    info.external_attr = 0o644 << 16
    return info


def _file_order(bundle_file: BundleFile) -> int:
    return 0 if bundle_file.archive_name.startswith(ASSETS_PREFIX) else 1


def write_bundle(destination: str, manifest: BundleManifest, files: Iterable[BundleFile]) -> Iterator[str]:
    """
    Writes a bundle to `destination`, yielding each entry name once it is in the
    archive: manifest, README, asset archives, then thumbnails. Files keep their
    relative order within each group.
    """
    ordered = sorted(files, key=_file_order)
    for bundle_file in ordered:
        if not is_safe_entry_name(bundle_file.archive_name):
            raise ValueError(f"Refusing to write unsafe entry name: {bundle_file.archive_name!r}")

    with zipfile.ZipFile(destination, "w") as zipf:
        zipf.writestr(_entry_info(MANIFEST_PATH, zipfile.ZIP_DEFLATED), manifest.to_json().encode("utf-8"))
        yield MANIFEST_PATH

        zipf.writestr(_entry_info(README_PATH, zipfile.ZIP_DEFLATED), render_readme(manifest).encode("utf-8"))
        yield README_PATH

        for bundle_file in ordered:
            # Asset archives are already compressed; storing them keeps export fast.
            compress_type = zipfile.ZIP_STORED if bundle_file.archive_name.endswith(".zip") else zipfile.ZIP_DEFLATED
            info = _entry_info(bundle_file.archive_name, compress_type)
            info.file_size = os.path.getsize(bundle_file.source_path)
            with open(bundle_file.source_path, "rb") as src, zipf.open(info, "w") as dst:
                shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
            yield bundle_file.archive_name


def render_readme(manifest: BundleManifest) -> str:
    metadata = manifest.metadata
    export_date = datetime.fromtimestamp(metadata.exported_at / 1000, tz=timezone.utc)
    return f"""GvStorage Data Export
=====================

Export Date: {export_date.strftime('%Y-%m-%d %H:%M:%S')} UTC
Format Version: {metadata.format_version}
App Version: {metadata.app_version or 'unknown'}

Contents:
---------
- Total Assets: {metadata.total_assets}
- Total Categories: {metadata.total_categories}
- Total Tags: {metadata.total_tags}
- Total Size: {format_bytes(metadata.total_size_bytes)}

Structure:
----------
{MANIFEST_PATH}       - Complete database export with all metadata
assets/             - All asset ZIP files organized by category slug
thumbnails/         - Thumbnail and gallery images organized by asset ID
{README_PATH}          - This file

Import Instructions:
--------------------
1. Start GvStorage on the target system.
2. Run `python import_library.py <this-file>` or use the import endpoint.
3. Decide what to do with assets whose slug already exists (skip, overwrite, rename).

Notes:
------
- All file paths in {MANIFEST_PATH} are relative to the storage root.
- Categories and tags are merged by slug into the target library.
"""


class ExtractedBundle:
    """A bundle unpacked into a directory. Referenced files are checked lazily."""

    def __init__(self, root: str):
        self.root = root
        self.manifest: Optional[BundleManifest] = None

    def load_manifest(self) -> BundleManifest:
        self.manifest = load_manifest(self.root)
        return self.manifest

    def resolve(self, relative_path: str) -> str:
        """Absolute path of a manifest-referenced file; CorruptBundle if it is not in the archive."""
        if not is_safe_entry_name(relative_path):
            raise CorruptBundle(f"Manifest references an unsafe path: {relative_path!r}")
        path = os.path.join(self.root, *relative_path.split("/"))
        if not os.path.isfile(path):
            raise CorruptBundle(f"File referenced by manifest is missing from archive: {relative_path}")
        return path


def extract_bundle(bundle_path: str, destination: str, cancel_token=None) -> ExtractedBundle:
    """
    Validates that `bundle_path` is a readable, non-empty ZIP container and
    extracts it into `destination`. Raises InvalidArchive otherwise.
    """
    if not os.path.isfile(bundle_path):
        raise InvalidArchive(f"Archive file not found: {bundle_path}")
    if os.path.getsize(bundle_path) == 0:
        raise InvalidArchive("Archive file is empty")

    try:
        with zipfile.ZipFile(bundle_path, "r") as zipf:
            entries = zipf.infolist()
            if not entries:
                raise InvalidArchive("Archive contains no entries")
            bad_entry = zipf.testzip()
            if bad_entry is not None:
                raise InvalidArchive(f"Archive entry is corrupted: {bad_entry}")
            for info in entries:
                if not is_safe_entry_name(info.filename):
                    raise InvalidArchive(f"Archive contains an unsafe entry name: {info.filename!r}")

            os.makedirs(destination, exist_ok=True)
            for info in entries:
                if cancel_token is not None and cancel_token.is_cancelled:
                    raise Cancelled()
                zipf.extract(info, destination)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError) as e:
        raise InvalidArchive(f"Invalid or corrupted archive file: {e}") from e

    logger.debug("Extracted %d entries from %s into %s", len(entries), bundle_path, destination)
    return ExtractedBundle(destination)


def load_manifest(root: str) -> BundleManifest:
    """Parses and validates database.json from an extracted bundle."""
    manifest_path = os.path.join(root, MANIFEST_PATH)
    if not os.path.isfile(manifest_path):
        raise InvalidManifest(f"{MANIFEST_PATH} not found in archive")

    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidManifest(f"Could not parse {MANIFEST_PATH}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidManifest(f"Invalid {MANIFEST_PATH}: expected an object at the top level")
    for key in REQUIRED_MANIFEST_KEYS:
        if key not in data:
            raise InvalidManifest(f"Invalid {MANIFEST_PATH}: missing {key}")

    try:
        return BundleManifest.model_validate(data)
    except ValidationError as e:
        raise InvalidManifest(f"Invalid {MANIFEST_PATH}: {e}") from e


def decode_bundle(bundle_path: str, destination: str) -> ExtractedBundle:
    """Extracts a bundle and loads its manifest in one step."""
    extracted = extract_bundle(bundle_path, destination)
    extracted.load_manifest()
    return extracted
