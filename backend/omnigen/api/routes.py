"""FastAPI route definitions."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse
from sse_starlette.sse import EventSourceResponse
from sqlalchemy.orm import Session

from omnigen.core.constants import TERMINAL_STATES, JobStatus, job_asset_prefix
from omnigen.core.settings import APP_VERSION, PATHS
from omnigen.db.session import SessionLocal, get_db_session
from omnigen.schemas.config import AppConfig
from omnigen.schemas.job import JobCreateRequest, JobCreateResponse, JobEventOut, JobOut
from omnigen.services import repository
from omnigen.services.config_store import load_config, save_config
from omnigen.services.media import ffmpeg_available, ffprobe_available
from omnigen.services.progress import JobSnapshot, stream_progress
from omnigen.services.storage import LocalAssetStore, StorageError
from omnigen.workers.queue import enqueue_job

router = APIRouter(prefix="/api", tags=["api"])


def get_asset_store() -> LocalAssetStore:
    return LocalAssetStore.from_config(PATHS.assets_root, load_config().storage)


def read_job_snapshot(job_id: str) -> Optional[JobSnapshot]:
    with SessionLocal() as session:
        job = repository.get_job(session, job_id)
        if not job:
            return None
        return JobSnapshot(
            job_id=job.id,
            stage=job.stage,
            status=job.status,
            meta=repository.job_meta(job),
            error_message=job.error_message,
            created_at=job.created_at,
        )


@router.get("/health")
def health(db: Session = Depends(get_db_session)) -> dict[str, object]:
    return {
        "version": APP_VERSION,
        "ffmpeg_available": ffmpeg_available(),
        "ffprobe_available": ffprobe_available(),
        "queue_db": str(PATHS.queue_path),
        "pending_jobs": repository.count_pending_jobs(db),
    }


@router.get("/config", response_model=AppConfig)
def get_config() -> AppConfig:
    return load_config()


@router.put("/config", response_model=AppConfig)
def put_config(config: AppConfig) -> AppConfig:
    return save_config(config)


@router.post("/jobs", response_model=JobCreateResponse)
def create_job(payload: JobCreateRequest, db: Session = Depends(get_db_session)) -> JobCreateResponse:
    max_scenes = load_config().pipeline.max_scenes
    if payload.script is not None and len(payload.script.scenes) > max_scenes:
        raise HTTPException(status_code=422, detail=f"Script has more than {max_scenes} scenes")

    job_id = uuid.uuid4().hex
    repository.create_job(
        db,
        job_id=job_id,
        owner_id=payload.owner_id,
        prompt=payload.prompt.strip(),
        aspect_ratio=payload.aspect_ratio,
        script=payload.script,
        start_image=payload.start_image,
        caption=payload.caption,
    )
    db.commit()

    enqueue_job(job_id)
    return JobCreateResponse(job_id=job_id, status=JobStatus.PENDING.value)


@router.get("/jobs", response_model=list[JobOut])
def list_jobs(owner_id: Optional[str] = None, db: Session = Depends(get_db_session)) -> list[JobOut]:
    return [repository.to_job_out(job) for job in repository.list_jobs(db, owner_id=owner_id)]


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, db: Session = Depends(get_db_session)) -> JobOut:
    job = repository.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return repository.to_job_out(job)


@router.delete("/jobs/{job_id}")
def delete_job(
    job_id: str,
    force: bool = Query(False),
    db: Session = Depends(get_db_session),
    store: LocalAssetStore = Depends(get_asset_store),
) -> dict[str, object]:
    job = repository.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    if not force and all(job.status != state.value for state in TERMINAL_STATES):
        raise HTTPException(
            status_code=409,
            detail="Job is not terminal. Set force=true to delete pending/processing jobs.",
        )

    owner_id = job.owner_id
    deleted = repository.delete_job(db, job_id)
    db.commit()
    if not deleted:
        raise HTTPException(status_code=404, detail="Job not found")

    removed = store.delete_prefix(job_asset_prefix(owner_id, job_id))
    return {"deleted": True, "job_id": job_id, "force": force, "assets_removed": removed}


@router.get("/jobs/{job_id}/events", response_model=list[JobEventOut])
def list_job_events(job_id: str, after_id: int = 0, db: Session = Depends(get_db_session)) -> list[JobEventOut]:
    if not repository.get_job(db, job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return [
        JobEventOut.model_validate(event, from_attributes=True)
        for event in repository.list_events(db, job_id, after_id=after_id)
    ]


@router.get("/jobs/{job_id}/progress")
async def stream_job_progress(job_id: str, db: Session = Depends(get_db_session)) -> EventSourceResponse:
    if not repository.get_job(db, job_id):
        raise HTTPException(status_code=404, detail="Job not found")

    interval = load_config().pipeline.progress_poll_interval_s
    return EventSourceResponse(stream_progress(job_id, read_job_snapshot, interval_s=interval))


@router.get("/assets/{key:path}")
def get_asset(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    store: LocalAssetStore = Depends(get_asset_store),
) -> FileResponse:
    if not store.verify(key, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired asset link")
    try:
        path = store.local_path(key)
    except StorageError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Asset not found")
    return FileResponse(path=str(path), media_type=store.content_type(key), filename=path.name)
