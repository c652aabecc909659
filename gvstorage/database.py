import uuid

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, JSON, Table, ForeignKey,
    DDL, create_engine, event,
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


asset_tags_table = Table(
    'asset_tags', Base.metadata,
    Column('asset_id', String(32), ForeignKey('assets.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', String(32), ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True)
)

# --- SQLAlchemy ORM Models ---
# All timestamps are epoch milliseconds (UTC).

class Category(Base):
    __tablename__ = 'categories'
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    # Categories form a tree; children go away with their parent.
    parent_id = Column(String(32), ForeignKey('categories.id', ondelete='CASCADE'), nullable=True, index=True)
    display_order = Column(Integer, nullable=False, default=0)
    asset_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Integer, nullable=False)

    parent = relationship("Category", remote_side=[id], backref="children")


class Tag(Base):
    __tablename__ = 'tags'
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(Integer, nullable=False)
    assets = relationship("Asset", secondary=asset_tags_table, back_populates="tags")


class Asset(Base):
    __tablename__ = 'assets'
    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=False, default='')
    short_description = Column(Text, nullable=True)
    # Assets must be moved or deleted before their category can go.
    category_id = Column(String(32), ForeignKey('categories.id', ondelete='RESTRICT'), nullable=False, index=True)
    version = Column(String, nullable=True)
    last_updated = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    # Paths are relative to the content store root.
    zip_path = Column(String, nullable=False, default='')
    thumbnail_path = Column(String, nullable=True)
    gallery_paths = Column(JSON, nullable=False, default=list)
    demo_url = Column(String, nullable=True)
    features = Column(JSON, nullable=False, default=list)
    is_featured = Column(Boolean, nullable=False, default=False)
    downloads_count = Column(Integer, nullable=False, default=0)

    category = relationship("Category")
    tags = relationship("Tag", secondary=asset_tags_table, back_populates="assets")
    zip_metadata = relationship("ZipMetadata", uselist=False, back_populates="asset", cascade="all, delete-orphan")
    export_history = relationship("ExportHistory", back_populates="asset", cascade="all, delete-orphan")


class ZipMetadata(Base):
    __tablename__ = 'zip_metadata'
    id = Column(String(32), primary_key=True, default=new_id)
    asset_id = Column(String(32), ForeignKey('assets.id', ondelete='CASCADE'), unique=True, nullable=False)
    entry_count = Column(Integer, nullable=False, default=0)
    compression_ratio = Column(Float, nullable=True)
    has_directory_structure = Column(Boolean, nullable=False, default=True)
    original_name = Column(String, nullable=True)
    asset = relationship("Asset", back_populates="zip_metadata")


class AppSetting(Base):
    __tablename__ = 'app_settings'
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(Integer, nullable=False)


class ExportHistory(Base):
    __tablename__ = 'export_history'
    id = Column(String(32), primary_key=True, default=new_id)
    asset_id = Column(String(32), ForeignKey('assets.id', ondelete='CASCADE'), nullable=False, index=True)
    export_path = Column(String, nullable=False)
    exported_at = Column(Integer, nullable=False)
    export_type = Column(String, nullable=False)
    asset = relationship("Asset", back_populates="export_history")


# Full-text index over asset titles and descriptions. It is an external-content
# table, so it only reflects `assets` after a rebuild (see search.py).
event.listen(
    Base.metadata,
    "after_create",
    DDL(
        "CREATE VIRTUAL TABLE IF NOT EXISTS assets_fts USING fts5("
        "title, description, content='assets', content_rowid='rowid')"
    ).execute_if(dialect="sqlite"),
)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_library_engine(database_url: str):
    """Creates an engine for the library database and makes sure the schema exists."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(database_url, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(bind=engine)
    return engine
