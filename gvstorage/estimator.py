"""
Export size projection and free-space validation.

If free space at the destination cannot be measured, `has_space` returns True:
an export is never refused only because the volume could not be queried. A
failing write is still caught by the exporter, which removes the partial file.
"""

import logging
import os
import shutil
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .database import Asset

logger = logging.getLogger(__name__)

# Thumbnails and gallery images are not sized in the database, so each one gets a flat allowance.
THUMBNAIL_ALLOWANCE_BYTES = 500_000
MANIFEST_ALLOWANCE_BYTES = 10 * 1024 * 1024
SAFETY_MARGIN = 1.10


def estimate_export_size(db: Session) -> int:
    """Projected bundle size in bytes for everything currently in the library."""
    content_bytes = db.query(func.coalesce(func.sum(Asset.file_size), 0)).scalar() or 0
    thumbnail_count = (
        db.query(func.count(Asset.id))
        .filter(Asset.thumbnail_path.isnot(None), Asset.thumbnail_path != "")
        .scalar()
    )
    gallery_count = sum(len(paths or []) for (paths,) in db.query(Asset.gallery_paths))
    image_count = thumbnail_count + gallery_count
    return int(content_bytes) + image_count * THUMBNAIL_ALLOWANCE_BYTES + MANIFEST_ALLOWANCE_BYTES


def _disk_free_bytes(path: str) -> int:
    return shutil.disk_usage(path).free


class DiskSpaceEstimator:
    def __init__(self, free_space: Optional[Callable[[str], int]] = None, safety_margin: float = SAFETY_MARGIN):
        # `free_space` maps a directory to its free bytes; injectable for tests.
        self._free_space = free_space or _disk_free_bytes
        self.safety_margin = safety_margin

    def required_bytes(self, projected_bytes: int) -> int:
        return int(projected_bytes * self.safety_margin)

    def available_bytes(self, destination_path: str) -> Optional[int]:
        """Free bytes on the destination's volume, or None if it cannot be determined."""
        directory = os.path.dirname(os.path.abspath(destination_path))
        # Walk up to the nearest existing directory; the destination folder may not exist yet.
        while directory and not os.path.isdir(directory):
            parent = os.path.dirname(directory)
            if parent == directory:
                break
            directory = parent
        try:
            return int(self._free_space(directory))
        except (OSError, ValueError) as e:
            logger.warning("Could not determine free space at %s: %s", directory, e)
            return None

    def has_space(self, destination_path: str, projected_bytes: int) -> bool:
        available = self.available_bytes(destination_path)
        if available is None:
            return True
        return available >= self.required_bytes(projected_bytes)
