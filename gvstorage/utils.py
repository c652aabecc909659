import logging
import re
import time
import unicodedata

from sqlalchemy.orm import Session

# Import models for type hinting and querying
from .database import Asset, Category

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

# --- Helper Functions ---

def now_ms() -> int:
    """Current UTC time as epoch milliseconds."""
    return int(time.time() * 1000)

def slugify(text: str) -> str:
    """
    Generates an ASCII slug from free text: accents stripped, lowercase,
    punctuation dropped, runs of whitespace, underscores and dashes collapsed
    into single dashes. 'Retro UI  Kit_v2!' becomes 'retro-ui-kit-v2'.
    """
    slug = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii").lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")

def is_valid_slug(value) -> bool:
    return isinstance(value, str) and bool(SLUG_PATTERN.match(value))

def format_bytes(num_bytes: int) -> str:
    """Formats a byte count as a human-readable string (e.g. '1.5 MB')."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 ** 2:
        return f"{num_bytes / 1024:.1f} KB"
    if num_bytes < 1024 ** 3:
        return f"{num_bytes / 1024 ** 2:.1f} MB"
    return f"{num_bytes / 1024 ** 3:.2f} GB"

def delete_asset_and_files(db: Session, content_store, asset: Asset) -> None:
    """
    Deletes an asset row (its tag links, ZIP metadata and export history go with
    it), decrements its category's counter, commits, and only then removes the
    asset's files from the content store.
    """
    asset_id, zip_path, category_id = asset.id, asset.zip_path, asset.category_id
    db.delete(asset)
    db.query(Category).filter(Category.id == category_id, Category.asset_count > 0).update(
        {Category.asset_count: Category.asset_count - 1}, synchronize_session=False
    )
    db.commit()
    content_store.delete_asset_files(asset_id, zip_path)
    logger.info("Deleted asset %s and its files.", asset_id)
