import os
import json
import shutil
from datetime import datetime
from typing import Optional

from fastapi import UploadFile, File, Depends, Query, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

# Import app components from the gvstorage package
from . import app, get_db, SessionLocal, content_store, job_manager, EXPORTS_DIR, CONFLICT_TIMEOUT_SECONDS
from .conflicts import ConflictBroker, ConflictResolution
from .database import Asset, Category, Tag
from .errors import JobConflict
from .estimator import DiskSpaceEstimator, estimate_export_size
from .exporter import LibraryExporter
from .importer import LibraryImporter
from .jobs import EXPORT, IMPORT
from .search import search_assets
from .utils import format_bytes

# --- Pydantic Models ---
class ExportRequest(BaseModel):
    # Absolute path of the bundle to write; defaults to a timestamped file in exports/.
    destination: Optional[str] = None


def _default_export_path() -> str:
    return os.path.join(EXPORTS_DIR, f"gvstorage_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.zip")


def _get_job_or_404(job_id: str):
    job = job_manager.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found.")
    return job

# --- Library backup ---

@app.get("/api/library/summary")
def api_library_summary(db: Session = Depends(get_db)):
    """Counts and the projected size of a full export, for the backup screen."""
    projected_bytes = estimate_export_size(db)
    estimator = DiskSpaceEstimator()
    available = estimator.available_bytes(_default_export_path())
    return {
        "assets": db.query(Asset).count(),
        "categories": db.query(Category).count(),
        "tags": db.query(Tag).count(),
        "projected_export_bytes": projected_bytes,
        "projected_export_size": format_bytes(projected_bytes),
        "required_bytes": estimator.required_bytes(projected_bytes),
        "available_bytes": available,
    }

@app.post("/api/library/export", status_code=202)
def api_start_export(request: Optional[ExportRequest] = None):
    """
    Starts a full-library export in the background. Progress is read from
    /api/jobs/{job_id}/events; the bundle path is in the job's result.
    """
    destination = (request.destination if request else None) or _default_export_path()
    exporter = LibraryExporter(SessionLocal, content_store, app_version=app.version)
    try:
        job = job_manager.start(EXPORT, lambda job: exporter.export(destination, job.cancel_token))
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"job_id": job.id, "destination": os.path.abspath(destination)}

@app.post("/api/library/import", status_code=202)
async def api_start_import(file: UploadFile = File(...)):
    """
    Starts importing an uploaded bundle in the background. Slug conflicts are
    surfaced on /api/jobs/{job_id}/conflict and wait for an answer there.
    """
    if not file.filename or not file.filename.lower().endswith('.zip'):
        raise HTTPException(status_code=400, detail="Invalid file type. Please upload a .zip file.")

    upload_dir = content_store.create_temp_dir("upload")
    bundle_path = os.path.join(upload_dir, "bundle.zip")
    try:
        with open(bundle_path, "wb") as buffer:
            shutil.copyfileobj(file.file, buffer)
    except OSError as e:
        content_store.remove_tree(upload_dir)
        raise HTTPException(status_code=500, detail=f"Could not save the uploaded file. Reason: {e}")
    finally:
        file.file.close()

    importer = LibraryImporter(SessionLocal, content_store)

    def make_import(job):
        job.broker = ConflictBroker(timeout=CONFLICT_TIMEOUT_SECONDS)
        return importer.import_bundle(bundle_path, job.cancel_token, job.broker)

    try:
        job = job_manager.start(IMPORT, make_import, on_finish=lambda: content_store.remove_tree(upload_dir))
    except JobConflict as e:
        content_store.remove_tree(upload_dir)
        raise HTTPException(status_code=409, detail=str(e))
    return {"job_id": job.id}

# --- Jobs ---

@app.get("/api/jobs/{job_id}")
def api_get_job(job_id: str):
    return JSONResponse(_get_job_or_404(job_id).to_dict())

@app.get("/api/jobs/{job_id}/events")
def api_job_events(job_id: str):
    """
    Streams progress as newline-delimited JSON: one line per ProgressEvent,
    starting with the latest one, then a final line with the job's status.
    """
    job = _get_job_or_404(job_id)

    def event_stream():
        for event in job.channel.iter_events():
            yield event.model_dump_json() + "\n"
        yield json.dumps(job.to_dict()) + "\n"

    return StreamingResponse(event_stream(), media_type="application/x-ndjson")

@app.post("/api/jobs/{job_id}/cancel")
def api_cancel_job(job_id: str):
    job = _get_job_or_404(job_id)
    if job.channel.closed:
        return {"message": f"Job already {job.status}.", "status": job.status}
    job.cancel()
    return {"message": "Cancellation requested.", "status": job.status}

@app.get("/api/jobs/{job_id}/conflict")
def api_get_conflict(job_id: str):
    """The conflict the import is waiting on, or null when none is open."""
    job = _get_job_or_404(job_id)
    pending = job.broker.pending if job.broker is not None else None
    return JSONResponse(pending.model_dump(mode="json") if pending is not None else None)

@app.post("/api/jobs/{job_id}/conflict")
def api_resolve_conflict(job_id: str, resolution: ConflictResolution):
    job = _get_job_or_404(job_id)
    if job.broker is None or not job.broker.resolve(resolution):
        raise HTTPException(status_code=404, detail="No conflict is waiting for a decision.")
    return {"message": f"Conflict resolved with '{resolution.action.value}'."}

# --- Search ---

@app.get("/api/assets/search")
def api_search_assets(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    assets = search_assets(db, q, limit)
    return JSONResponse({
        "query": q,
        "results": [
            {
                "id": asset.id,
                "title": asset.title,
                "slug": asset.slug,
                "category_id": asset.category_id,
                "short_description": asset.short_description,
            }
            for asset in assets
        ],
    })
