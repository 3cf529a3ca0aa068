"""Persistence helpers for jobs and events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from omnigen.core.constants import STATUS_TRANSITIONS, TERMINAL_STATES, JobStatus
from omnigen.core.stages import FAILED, COMPLETE, Stage, UnknownStageError, is_forward
from omnigen.models.job import Job, JobEvent
from omnigen.schemas.job import CaptionSpec, ClipOut, JobOut, Script
from omnigen.services.progress import display_name, progress_for_job

logger = logging.getLogger(__name__)


class JobStateError(RuntimeError):
    pass


class JobNotFoundError(LookupError):
    pass


def _json_load(value: Optional[str], default: object) -> object:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("discarding unreadable json column value")
        return default


def _json_dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def job_meta(job: Job) -> dict[str, object]:
    meta = _json_load(job.meta_json, {})
    return meta if isinstance(meta, dict) else {}


def job_clips(job: Job) -> list[dict[str, object]]:
    clips = _json_load(job.clips_json, [])
    return clips if isinstance(clips, list) else []


def job_script(job: Job) -> Optional[Script]:
    data = _json_load(job.script_json, None)
    if data is None:
        return None
    return Script.model_validate(data)


def job_caption(job: Job) -> Optional[CaptionSpec]:
    data = _json_load(job.caption_json, None)
    if data is None:
        return None
    return CaptionSpec.model_validate(data)


def to_job_out(job: Job) -> JobOut:
    meta = job_meta(job)
    try:
        script = job_script(job)
    except ValueError:
        script = None
    return JobOut(
        id=job.id,
        owner_id=job.owner_id,
        prompt=job.prompt,
        aspect_ratio=job.aspect_ratio,
        stage=job.stage,
        status=job.status,
        progress=progress_for_job(job.stage, job.status, meta),
        stage_display=display_name(job.stage, meta) if job.stage else "",
        script=script,
        clips=[ClipOut.model_validate(clip) for clip in job_clips(job)],
        audio_ref=job.audio_ref,
        final_video_ref=job.final_video_ref,
        error_message=job.error_message,
        meta=meta,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


def create_job(
    db: Session,
    *,
    job_id: str,
    owner_id: str,
    prompt: str = "",
    aspect_ratio: str = "16:9",
    script: Optional[Script] = None,
    start_image: Optional[str] = None,
    caption: Optional[CaptionSpec] = None,
) -> Job:
    job = Job(
        id=job_id,
        owner_id=owner_id,
        prompt=prompt,
        aspect_ratio=aspect_ratio,
        start_image=start_image,
        script_json=_json_dump(script.model_dump()) if script else None,
        caption_json=_json_dump(caption.model_dump()) if caption else None,
        stage=None,
        status=JobStatus.PENDING.value,
        meta_json="{}",
        clips_json="[]",
    )
    db.add(job)
    db.flush()
    append_event(db, job_id, "", JobStatus.PENDING.value, "Job accepted and queued")
    return job


def list_jobs(db: Session, owner_id: Optional[str] = None) -> list[Job]:
    stmt = select(Job).order_by(Job.created_at.desc())
    if owner_id:
        stmt = stmt.where(Job.owner_id == owner_id)
    return list(db.scalars(stmt))


def get_job(db: Session, job_id: str) -> Optional[Job]:
    return db.get(Job, job_id)


def _require_job(db: Session, job_id: str) -> Job:
    job = get_job(db, job_id)
    if not job:
        raise JobNotFoundError(f"job not found: {job_id}")
    return job


def _require_mutable(job: Job) -> None:
    if JobStatus(job.status) in TERMINAL_STATES:
        raise JobStateError(f"job {job.id} is already {job.status}")


def _set_status(job: Job, status: Union[JobStatus, str]) -> None:
    current = JobStatus(job.status)
    target = JobStatus(status)
    if target not in STATUS_TRANSITIONS[current]:
        raise JobStateError(f"job {job.id}: illegal status transition {current.value} -> {target.value}")
    job.status = target.value


def _current_stage(job: Job) -> Optional[Stage]:
    if not job.stage:
        return None
    try:
        return Stage.parse(job.stage)
    except UnknownStageError:
        logger.warning("job %s carries unknown stage token %r", job.id, job.stage)
        return None


def delete_job(db: Session, job_id: str) -> bool:
    job = get_job(db, job_id)
    if not job:
        return False
    db.delete(job)
    db.flush()
    return True


def mark_processing(db: Session, job_id: str) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    if job.status != JobStatus.PROCESSING.value:
        _set_status(job, JobStatus.PROCESSING)
        append_event(db, job_id, job.stage or "", job.status, "Job started")
    db.flush()
    return job


def update_stage(
    db: Session,
    job_id: str,
    stage: Stage,
    message: Optional[str] = None,
    **metadata: object,
) -> Job:
    """Persist a stage transition plus any stage metadata.

    Stage writes must move forward in the fixed stage ordering and are only
    accepted while the job is not terminal. The first write moves a pending job
    to processing.
    """
    job = _require_job(db, job_id)
    _require_mutable(job)
    if stage.is_terminal:
        raise JobStateError("terminal stages are written by mark_complete / mark_failed")
    current = _current_stage(job)
    if not is_forward(current, stage):
        raise JobStateError(f"job {job_id}: stage {stage.token} is behind {current.token if current else ''}")

    if job.status == JobStatus.PENDING.value:
        _set_status(job, JobStatus.PROCESSING)
    job.stage = stage.token
    if metadata:
        meta = job_meta(job)
        meta.update(metadata)
        job.meta_json = _json_dump(meta)
    job.updated_at = _utcnow()
    append_event(db, job_id, stage.token, job.status, message or stage.token)
    db.flush()
    return job


def patch_meta(db: Session, job_id: str, **metadata: object) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    meta = job_meta(job)
    meta.update(metadata)
    job.meta_json = _json_dump(meta)
    job.updated_at = _utcnow()
    db.flush()
    return job


def set_script(db: Session, job_id: str, script: Script) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    job.script_json = _json_dump(script.model_dump())
    db.flush()
    return job


def append_clip(db: Session, job_id: str, clip: dict[str, object]) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    clips = job_clips(job)
    clips.append(clip)
    job.clips_json = _json_dump(clips)
    db.flush()
    return job


def set_audio_ref(db: Session, job_id: str, audio_ref: Optional[str]) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    job.audio_ref = audio_ref
    db.flush()
    return job


def mark_complete(db: Session, job_id: str, final_video_ref: str) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    _set_status(job, JobStatus.COMPLETED)
    now = _utcnow()
    job.stage = COMPLETE.token
    job.final_video_ref = final_video_ref
    job.error_message = None
    job.completed_at = now
    job.updated_at = now
    append_event(db, job_id, COMPLETE.token, job.status, "Video is ready")
    db.flush()
    return job


def mark_failed(db: Session, job_id: str, reason: str) -> Job:
    job = _require_job(db, job_id)
    _require_mutable(job)
    _set_status(job, JobStatus.FAILED)
    now = _utcnow()
    job.stage = FAILED.token
    job.error_message = reason
    job.completed_at = now
    job.updated_at = now
    append_event(db, job_id, FAILED.token, job.status, reason)
    db.flush()
    return job


def append_event(db: Session, job_id: str, stage: str, status: str, message: str) -> JobEvent:
    event = JobEvent(job_id=job_id, stage=stage, status=status, message=message)
    db.add(event)
    db.flush()
    return event


def list_events(db: Session, job_id: str, after_id: int = 0) -> list[JobEvent]:
    stmt = (
        select(JobEvent)
        .where(JobEvent.job_id == job_id, JobEvent.id > after_id)
        .order_by(JobEvent.id.asc())
    )
    return list(db.scalars(stmt))


def list_pending_jobs(db: Session) -> list[str]:
    stmt = select(Job.id).where(Job.status == JobStatus.PENDING.value).order_by(Job.created_at.asc())
    return list(db.scalars(stmt))


def count_pending_jobs(db: Session) -> int:
    return len(list_pending_jobs(db))


def fail_stale_jobs(db: Session, stale_after_s: float, now: Optional[datetime] = None) -> list[str]:
    """Fail processing jobs that have not written a stage for too long.

    A job whose worker died mid-run stays at its last persisted stage forever;
    there is no resumption, so such jobs are failed explicitly.
    """
    current = now or _utcnow()
    cutoff = current - timedelta(seconds=stale_after_s)
    stmt = select(Job).where(Job.status == JobStatus.PROCESSING.value)
    failed: list[str] = []
    for job in list(db.scalars(stmt)):
        updated = job.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        if updated > cutoff:
            continue
        last_stage = job.stage or "start"
        mark_failed(
            db,
            job.id,
            f"Job stopped making progress at stage {last_stage} and was abandoned after {int(stale_after_s)}s.",
        )
        failed.append(job.id)
    if failed:
        logger.warning("failed %d stale job(s): %s", len(failed), ", ".join(failed))
    db.flush()
    return failed
