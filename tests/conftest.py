"""Shared pytest fixtures for gvstorage tests."""

import json
import os
import tempfile
import zipfile

# The gvstorage package opens its database when imported; point it at a
# throwaway location before any test module imports it.
os.environ.setdefault("GVSTORAGE_HOME", tempfile.mkdtemp(prefix="gvstorage_test_home_"))
os.environ.setdefault("GVSTORAGE_CONFLICT_TIMEOUT", "30")

import pytest
from PIL import Image as PILImage
from sqlalchemy.orm import selectinload, sessionmaker

from gvstorage.conflicts import fixed_policy
from gvstorage.database import (
    AppSetting, Asset, Category, Tag, ZipMetadata, create_library_engine, new_id,
)
from gvstorage.estimator import DiskSpaceEstimator
from gvstorage.exporter import LibraryExporter
from gvstorage.importer import LibraryImporter
from gvstorage.progress import CancellationToken, run_to_completion
from gvstorage.storage import ContentStore
from gvstorage.utils import now_ms, slugify

PLENTY_OF_SPACE = 10 ** 15


def make_zip(path, files=None):
    """Writes a small real ZIP archive to `path`."""
    files = files or {"readme.txt": "hello", "src/index.html": "<html></html>"}
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zipf:
        for name, content in files.items():
            zipf.writestr(name, content)
    return path


def make_jpeg(path, color=(200, 40, 40)):
    PILImage.new("RGB", (8, 8), color).save(path, "JPEG")
    return path


def write_bundle_by_hand(path, manifest, files=None):
    """Builds a bundle from a raw manifest dict and {entry name: bytes}."""
    with zipfile.ZipFile(path, "w") as zipf:
        zipf.writestr("database.json", json.dumps(manifest))
        for name, content in (files or {}).items():
            zipf.writestr(name, content)
    return path


def zip_bytes(files=None):
    """Bytes of a small ZIP archive, for hand-built bundles."""
    with tempfile.TemporaryDirectory() as tmp:
        path = make_zip(os.path.join(tmp, "content.zip"), files)
        with open(path, "rb") as f:
            return f.read()


def jpeg_bytes():
    with tempfile.TemporaryDirectory() as tmp:
        path = make_jpeg(os.path.join(tmp, "thumb.jpg"))
        with open(path, "rb") as f:
            return f.read()


class Library:
    """A self-contained library (database and content store) under one directory."""

    def __init__(self, root):
        self.root = str(root)
        os.makedirs(self.root, exist_ok=True)
        self.engine = create_library_engine(f"sqlite:///{os.path.join(self.root, 'database.db')}")
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.store = ContentStore(os.path.join(self.root, "storage"))
        self._scratch = os.path.join(self.root, "scratch")
        os.makedirs(self._scratch, exist_ok=True)

    # --- Seeding ---

    def add_category(self, name, parent_id=None, display_order=0, slug=None):
        category_id = new_id()
        with self.Session() as db, db.begin():
            db.add(Category(
                id=category_id, name=name, slug=slug or slugify(name), description=f"{name} things",
                parent_id=parent_id, display_order=display_order, asset_count=0, created_at=now_ms(),
            ))
        return category_id

    def add_tag(self, name):
        tag_id = new_id()
        with self.Session() as db, db.begin():
            db.add(Tag(id=tag_id, name=name, slug=slugify(name), created_at=now_ms()))
        return tag_id

    def add_setting(self, key, value):
        with self.Session() as db, db.begin():
            db.add(AppSetting(key=key, value=value, updated_at=now_ms()))

    def add_asset(self, title, category_id, tags=(), thumbnail=True, gallery=0, slug=None,
                  description="", version="1.0.0", files=None):
        asset_id = new_id()
        with self.Session() as db:
            category_slug = db.get(Category, category_id).slug

        content = make_zip(os.path.join(self._scratch, f"{asset_id}.zip"), files)
        zip_path = self.store.save_asset(content, asset_id, category_slug)
        thumbnail_path = None
        if thumbnail:
            thumbnail_path = self.store.save_thumbnail(
                make_jpeg(os.path.join(self._scratch, f"{asset_id}.jpg")), asset_id)
        gallery_paths = [
            self.store.save_gallery_image(
                make_jpeg(os.path.join(self._scratch, f"{asset_id}_{i}.jpg"), (i * 40, 90, 90)), asset_id, i)
            for i in range(1, gallery + 1)
        ]

        now = now_ms()
        with self.Session() as db, db.begin():
            asset = Asset(
                id=asset_id, title=title, slug=slug or slugify(title),
                description=description or f"The {title} pack", short_description=title,
                category_id=category_id, version=version, created_at=now, updated_at=now,
                file_size=os.path.getsize(content), zip_path=zip_path, thumbnail_path=thumbnail_path,
                gallery_paths=gallery_paths, features=[{"name": "Responsive", "enabled": True}],
            )
            asset.tags = db.query(Tag).filter(Tag.name.in_(list(tags))).all() if tags else []
            db.add(asset)
            db.add(ZipMetadata(id=new_id(), asset_id=asset_id, entry_count=2, compression_ratio=0.5,
                               original_name=f"{slugify(title)}.zip"))
            db.query(Category).filter(Category.id == category_id).update(
                {Category.asset_count: Category.asset_count + 1}, synchronize_session=False)
        return asset_id

    # --- Inspection ---

    def count(self, model):
        with self.Session() as db:
            return db.query(model).count()

    def asset(self, slug):
        with self.Session() as db:
            return (
                db.query(Asset)
                .options(selectinload(Asset.tags), selectinload(Asset.zip_metadata), selectinload(Asset.category))
                .filter(Asset.slug == slug)
                .first()
            )

    def category(self, slug):
        with self.Session() as db:
            return db.query(Category).options(selectinload(Category.parent)).filter(Category.slug == slug).first()

    def slugs(self):
        with self.Session() as db:
            return sorted(slug for (slug,) in db.query(Asset.slug).all())

    def temp_files(self):
        """Files and stray directories left under the store's temp/ area."""
        leftovers = []
        for dirpath, dirnames, filenames in os.walk(self.store.temp_dir):
            leftovers.extend(os.path.join(dirpath, f) for f in filenames)
            if dirpath != self.store.temp_dir and not dirnames and not filenames \
                    and os.path.basename(dirpath) != "staging":
                leftovers.append(dirpath)
        return leftovers

    # --- Operations ---

    def exporter(self, free_space=PLENTY_OF_SPACE):
        estimator = DiskSpaceEstimator(free_space=lambda path: free_space)
        return LibraryExporter(self.Session, self.store, estimator=estimator, app_version="test")

    def export(self, destination, events=None):
        on_event = events.append if events is not None else None
        return run_to_completion(self.exporter().export(str(destination), CancellationToken()), on_event)

    def importer(self):
        return LibraryImporter(self.Session, self.store)

    def import_bundle(self, bundle_path, policy="skip", resolver=None, events=None, token=None):
        importer = self.importer()
        resolver = resolver or fixed_policy(policy, importer.slug_exists)
        on_event = events.append if events is not None else None
        return run_to_completion(
            importer.import_bundle(str(bundle_path), token or CancellationToken(), resolver), on_event)


@pytest.fixture
def make_library(tmp_path):
    """Factory for empty libraries, each in its own directory."""
    counter = {"n": 0}

    def _make(name=None):
        counter["n"] += 1
        return Library(tmp_path / (name or f"library_{counter['n']}"))

    return _make


@pytest.fixture
def library(make_library):
    return make_library("target")


@pytest.fixture
def seeded_library(make_library):
    """
    A small library:
        Templates (root) > Web (child), Icons (root)
        tags: dark, minimal, retro
        assets: Landing Page (Web, dark+minimal, 2 gallery images),
                Admin Dashboard (Web, dark), Pixel Icons (Icons, retro, no thumbnail)
    """
    lib = make_library("source")
    templates = lib.add_category("Templates", display_order=0)
    web = lib.add_category("Web", parent_id=templates, display_order=1)
    icons = lib.add_category("Icons", display_order=2)
    for name in ("dark", "minimal", "retro"):
        lib.add_tag(name)
    lib.add_asset("Landing Page", web, tags=("dark", "minimal"), gallery=2)
    lib.add_asset("Admin Dashboard", web, tags=("dark",))
    lib.add_asset("Pixel Icons", icons, tags=("retro",), thumbnail=False)
    lib.add_setting("theme", "dark")
    return lib


@pytest.fixture
def seeded_bundle(seeded_library, tmp_path):
    """Path of a bundle exported from `seeded_library`."""
    path = tmp_path / "seeded_bundle.zip"
    seeded_library.export(path)
    return path


class AppLibrary(Library):
    """The library the gvstorage package itself serves, under GVSTORAGE_HOME."""

    def __init__(self):
        import gvstorage

        self.root = gvstorage.PROJECT_ROOT
        self.engine = gvstorage.engine
        self.Session = gvstorage.SessionLocal
        self.store = gvstorage.content_store
        self._scratch = os.path.join(self.root, "scratch")
        os.makedirs(self._scratch, exist_ok=True)


@pytest.fixture(scope="session")
def app_library():
    """The package's own library, seeded once for the API and CLI tests."""
    from gvstorage.search import rebuild_search_index

    lib = AppLibrary()
    served = lib.add_category("Served")
    lib.add_tag("served")
    lib.add_asset("Alpha Starter Kit", served, tags=("served",))
    lib.add_asset("Beta Theme", served)
    with lib.Session() as db:
        rebuild_search_index(db)
    return lib
