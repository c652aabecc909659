"""Tests for estimator module: projected export size and free-space checks."""

import pytest

from gvstorage.database import Asset
from gvstorage.estimator import (
    MANIFEST_ALLOWANCE_BYTES, THUMBNAIL_ALLOWANCE_BYTES, DiskSpaceEstimator, estimate_export_size,
)


def test_empty_library_needs_only_manifest_allowance(library):
    with library.Session() as db:
        assert estimate_export_size(db) == MANIFEST_ALLOWANCE_BYTES


def test_projection_sums_files_and_thumbnail_allowance(library):
    web = library.add_category("Web")
    with_thumb = library.add_asset("One", web)
    without_thumb = library.add_asset("Two", web, thumbnail=False)

    with library.Session() as db:
        sizes = {a.id: a.file_size for a in db.query(Asset).all()}
        projected = estimate_export_size(db)

    expected = sizes[with_thumb] + sizes[without_thumb] + THUMBNAIL_ALLOWANCE_BYTES + MANIFEST_ALLOWANCE_BYTES
    assert projected == expected


def test_gallery_images_get_the_image_allowance(library):
    web = library.add_category("Web")
    library.add_asset("Showcase", web, thumbnail=False, gallery=3)

    with library.Session() as db:
        file_size = db.query(Asset).one().file_size
        projected = estimate_export_size(db)

    assert projected == file_size + 3 * THUMBNAIL_ALLOWANCE_BYTES + MANIFEST_ALLOWANCE_BYTES


class TestDiskSpaceEstimator:
    def test_required_bytes_applies_ten_percent_margin(self):
        assert DiskSpaceEstimator().required_bytes(1_000_000) == 1_100_000

    def test_enough_space(self, tmp_path):
        estimator = DiskSpaceEstimator(free_space=lambda path: 1_100_000)
        assert estimator.has_space(str(tmp_path / "out.zip"), 1_000_000)

    def test_not_enough_space(self, tmp_path):
        estimator = DiskSpaceEstimator(free_space=lambda path: 1_099_999)
        assert not estimator.has_space(str(tmp_path / "out.zip"), 1_000_000)

    def test_unknown_free_space_does_not_block(self, tmp_path):
        def broken(path):
            raise OSError("statvfs failed")

        estimator = DiskSpaceEstimator(free_space=broken)
        assert estimator.available_bytes(str(tmp_path / "out.zip")) is None
        assert estimator.has_space(str(tmp_path / "out.zip"), 10 ** 18)

    def test_queries_nearest_existing_directory(self, tmp_path):
        queried = []

        def record(path):
            queried.append(path)
            return 42

        estimator = DiskSpaceEstimator(free_space=record)
        assert estimator.available_bytes(str(tmp_path / "not" / "yet" / "there" / "out.zip")) == 42
        assert queried == [str(tmp_path)]

    @pytest.mark.parametrize("margin, expected", [(1.0, 500), (1.5, 750)])
    def test_custom_margin(self, margin, expected):
        assert DiskSpaceEstimator(safety_margin=margin).required_bytes(500) == expected
