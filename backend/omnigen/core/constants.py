"""Project-wide constants and state definitions."""

from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {JobStatus.COMPLETED, JobStatus.FAILED}

STATUS_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

ASPECT_RATIOS = {"16:9", "9:16", "1:1"}


def build_scene_clip_key(owner_id: str, job_id: str, scene_index: int) -> str:
    return f"users/{owner_id}/jobs/{job_id}/clips/scene-{scene_index:03d}.mp4"


def build_scene_frame_key(owner_id: str, job_id: str, scene_index: int) -> str:
    return f"users/{owner_id}/jobs/{job_id}/thumbnails/scene-{scene_index:03d}.jpg"


def build_audio_key(owner_id: str, job_id: str) -> str:
    return f"users/{owner_id}/jobs/{job_id}/audio/background-music.mp3"


def build_narrator_key(owner_id: str, job_id: str) -> str:
    return f"users/{owner_id}/jobs/{job_id}/audio/narrator-voiceover.mp3"


def build_final_video_key(owner_id: str, job_id: str) -> str:
    return f"users/{owner_id}/jobs/{job_id}/final/video.mp4"


def job_asset_prefix(owner_id: str, job_id: str) -> str:
    return f"users/{owner_id}/jobs/{job_id}/"
