import logging
import os
import shutil
import time
import uuid

logger = logging.getLogger(__name__)


class ContentStore:
    """
    Owns the on-disk layout of the library. All paths handed out to the database
    are relative to `root`, with forward slashes:

        assets/<category-slug>/<asset-id>.zip
        thumbnails/<asset-id>/main.jpg
        thumbnails/<asset-id>/gallery_<n>.jpg
        temp/            scratch space for imports and staging
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self.assets_dir = os.path.join(self.root, "assets")
        self.thumbnails_dir = os.path.join(self.root, "thumbnails")
        self.temp_dir = os.path.join(self.root, "temp")
        for directory in (self.root, self.assets_dir, self.thumbnails_dir, self.temp_dir):
            os.makedirs(directory, exist_ok=True)

    # --- Path helpers ---

    def relative_path(self, absolute_path: str) -> str:
        return os.path.relpath(absolute_path, self.root).replace(os.sep, "/")

    def absolute_path(self, relative_path: str) -> str:
        return os.path.join(self.root, *relative_path.split("/"))

    def exists(self, relative_path) -> bool:
        return bool(relative_path) and os.path.isfile(self.absolute_path(relative_path))

    # --- Permanent storage ---

    def save_asset(self, source_path: str, asset_id: str, category_slug: str) -> str:
        """Copies a staged asset ZIP into permanent storage and returns its relative path."""
        category_dir = os.path.join(self.assets_dir, category_slug)
        if os.path.dirname(os.path.realpath(category_dir)) != os.path.realpath(self.assets_dir):
            raise ValueError(f"Category slug {category_slug!r} does not name a directory under assets/")
        os.makedirs(category_dir, exist_ok=True)
        dest_path = os.path.join(category_dir, f"{asset_id}.zip")
        shutil.copyfile(source_path, dest_path)
        return self.relative_path(dest_path)

    def save_thumbnail(self, source_path: str, asset_id: str) -> str:
        return self._save_into_thumbnail_dir(source_path, asset_id, "main.jpg")

    def save_gallery_image(self, source_path: str, asset_id: str, index: int) -> str:
        return self._save_into_thumbnail_dir(source_path, asset_id, f"gallery_{index}.jpg")

    def _save_into_thumbnail_dir(self, source_path: str, asset_id: str, filename: str) -> str:
        asset_thumb_dir = os.path.join(self.thumbnails_dir, asset_id)
        os.makedirs(asset_thumb_dir, exist_ok=True)
        dest_path = os.path.join(asset_thumb_dir, filename)
        shutil.copyfile(source_path, dest_path)
        return self.relative_path(dest_path)

    def delete_asset_files(self, asset_id: str, zip_path=None) -> None:
        """Removes an asset's ZIP and its whole thumbnail directory. Missing files are ignored."""
        if zip_path:
            path = self.absolute_path(zip_path)
            if os.path.exists(path):
                os.remove(path)
        thumb_dir = os.path.join(self.thumbnails_dir, asset_id)
        if os.path.isdir(thumb_dir):
            shutil.rmtree(thumb_dir)

    # --- Scratch space ---

    def create_temp_dir(self, prefix: str) -> str:
        """Creates a uniquely named directory under temp/ (e.g. import_1718000000000_3fa2c1)."""
        name = f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        path = os.path.join(self.temp_dir, name)
        os.makedirs(path)
        return path

    def staging_dir(self, asset_id: str) -> str:
        path = os.path.join(self.temp_dir, "staging", asset_id)
        os.makedirs(path, exist_ok=True)
        return path

    def remove_tree(self, path) -> None:
        """Best-effort recursive delete used by cleanup paths."""
        if not path or not os.path.exists(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning("Could not delete %s. Reason: %s", path, e)
