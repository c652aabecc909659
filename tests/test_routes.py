"""Tests for the HTTP API: background export/import jobs, progress streams, conflicts, search."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from gvstorage import app, job_manager


@pytest.fixture(scope="module")
def client():
    return TestClient(app)


def _finished(job_id, timeout=15):
    job = job_manager.get(job_id)
    assert job is not None
    assert job.wait(timeout)
    return job


def _wait_for_conflict(client, job_id, timeout=15):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/jobs/{job_id}/conflict").json()
        if body:
            return body
        time.sleep(0.02)
    raise AssertionError("import never asked about a conflict")


def _upload(client, path, name="bundle.zip"):
    with open(path, "rb") as f:
        return client.post("/api/library/import", files={"file": (name, f, "application/zip")})


@pytest.fixture
def self_bundle(app_library, tmp_path):
    """A bundle of the served library; importing it back conflicts on every asset."""
    path = tmp_path / "self.zip"
    app_library.export(path)
    return path


# =============================================================================
# Export
# =============================================================================


def test_library_summary(client, app_library):
    response = client.get("/api/library/summary")
    assert response.status_code == 200
    data = response.json()
    assert data["assets"] >= 2
    assert data["required_bytes"] > data["projected_export_bytes"]


def test_export_job_to_chosen_destination(client, app_library, tmp_path):
    destination = tmp_path / "api_export.zip"
    response = client.post("/api/library/export", json={"destination": str(destination)})
    assert response.status_code == 202
    job_id = response.json()["job_id"]

    _finished(job_id)
    status = client.get(f"/api/jobs/{job_id}").json()
    assert status["status"] == "completed"
    assert status["kind"] == "export"
    assert status["result"]["archive_path"] == str(destination)
    assert destination.is_file()


def test_export_job_without_body_uses_exports_dir(client, app_library):
    response = client.post("/api/library/export")
    assert response.status_code == 202
    job = _finished(response.json()["job_id"])
    assert job.status == "completed"
    assert "exports" in job.result.archive_path


def test_events_stream_ends_with_status(client, app_library, tmp_path):
    response = client.post("/api/library/export", json={"destination": str(tmp_path / "stream.zip")})
    job_id = response.json()["job_id"]

    stream = client.get(f"/api/jobs/{job_id}/events")
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in stream.text.splitlines() if line]
    assert lines[-1]["status"] == "completed"
    assert lines[-2]["phase"] == "completed"


# =============================================================================
# Import
# =============================================================================


def test_import_rejects_non_zip_upload(client):
    response = client.post("/api/library/import", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 400


def test_import_answering_conflicts(client, self_bundle):
    response = _upload(client, self_bundle)
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    job = job_manager.get(job_id)

    answered = []
    deadline = time.monotonic() + 15
    while not job.channel.closed and time.monotonic() < deadline:
        pending = client.get(f"/api/jobs/{job_id}/conflict").json()
        if pending:
            answered.append(pending["slug"])
            reply = client.post(f"/api/jobs/{job_id}/conflict", json={"action": "skip"})
            assert reply.status_code == 200
        time.sleep(0.02)

    job = _finished(job_id)
    assert job.status == "completed"
    assert job.result.imported == 0
    assert job.result.skipped == job.result.total_assets
    assert sorted(answered) == sorted(job.result.skipped_slugs)
    assert "alpha-starter-kit" in answered


def test_second_import_is_rejected_and_cancel_releases_conflict(client, self_bundle):
    first = _upload(client, self_bundle).json()["job_id"]
    conflict = _wait_for_conflict(client, first)
    assert {"slug", "title", "existing", "incoming"} <= set(conflict)

    second = _upload(client, self_bundle)
    assert second.status_code == 409

    response = client.post(f"/api/jobs/{first}/cancel")
    assert response.status_code == 200
    job = _finished(first)
    assert job.status == "cancelled"
    assert client.get(f"/api/jobs/{first}").json()["status"] == "cancelled"


def test_import_of_garbage_fails_job(client, tmp_path):
    junk = tmp_path / "junk.zip"
    junk.write_bytes(b"not really a zip")
    job_id = _upload(client, junk, "junk.zip").json()["job_id"]
    job = _finished(job_id)
    assert job.status == "failed"
    assert "Invalid" in client.get(f"/api/jobs/{job_id}").json()["error"]


# =============================================================================
# Jobs and conflicts
# =============================================================================


def test_unknown_job_is_404(client):
    assert client.get("/api/jobs/does-not-exist").status_code == 404
    assert client.post("/api/jobs/does-not-exist/cancel").status_code == 404


def test_conflict_answer_without_open_conflict_is_404(client, app_library, tmp_path):
    job_id = client.post("/api/library/export", json={"destination": str(tmp_path / "x.zip")}).json()["job_id"]
    _finished(job_id)
    assert client.get(f"/api/jobs/{job_id}/conflict").json() is None
    response = client.post(f"/api/jobs/{job_id}/conflict", json={"action": "skip"})
    assert response.status_code == 404


def test_rename_answer_needs_valid_slug(client):
    response = client.post("/api/jobs/any/conflict", json={"action": "rename", "newSlug": "Not Valid"})
    assert response.status_code == 422


def test_cancel_finished_job_reports_status(client, app_library, tmp_path):
    job_id = client.post("/api/library/export", json={"destination": str(tmp_path / "y.zip")}).json()["job_id"]
    _finished(job_id)
    response = client.post(f"/api/jobs/{job_id}/cancel")
    assert response.json()["status"] == "completed"


# =============================================================================
# Search
# =============================================================================


def test_search_assets(client, app_library):
    response = client.get("/api/assets/search", params={"q": "alpha"})
    assert response.status_code == 200
    slugs = [r["slug"] for r in response.json()["results"]]
    assert "alpha-starter-kit" in slugs
    assert "beta-theme" not in slugs


def test_search_requires_query(client):
    assert client.get("/api/assets/search").status_code == 422
