"""Pydantic schemas for scripts, jobs and API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from omnigen.core.constants import ASPECT_RATIOS


class Scene(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=1)
    duration_s: float = Field(gt=0, le=60)
    prompt: str = Field(min_length=1)
    start_image: Optional[str] = None


class AudioSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable_audio: bool = True
    music_mood: str = ""
    music_style: str = ""
    prompt: Optional[str] = None
    narrator_script: Optional[str] = None
    voice: Optional[Literal["male", "female"]] = None

    @property
    def wants_narration(self) -> bool:
        return bool(self.voice and (self.narrator_script or "").strip())


class CaptionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    start_s: Optional[float] = Field(default=None, ge=0)


class Script(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = ""
    scenes: list[Scene] = Field(min_length=1)
    audio: AudioSpec = Field(default_factory=AudioSpec)
    caption: Optional[CaptionSpec] = None

    @model_validator(mode="after")
    def _check_scene_order(self) -> "Script":
        expected = list(range(1, len(self.scenes) + 1))
        if [scene.index for scene in self.scenes] != expected:
            raise ValueError("scene indexes must run 1..N in order")
        return self

    @property
    def total_duration_s(self) -> float:
        return sum(scene.duration_s for scene in self.scenes)


class JobCreateRequest(BaseModel):
    owner_id: str = "local"
    prompt: str = ""
    script: Optional[Script] = None
    aspect_ratio: str = "16:9"
    start_image: Optional[str] = None
    caption: Optional[CaptionSpec] = None

    @field_validator("aspect_ratio")
    @classmethod
    def _check_aspect(cls, value: str) -> str:
        if value not in ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of {sorted(ASPECT_RATIOS)}")
        return value

    @model_validator(mode="after")
    def _require_input(self) -> "JobCreateRequest":
        if self.script is None and not self.prompt.strip():
            raise ValueError("either prompt or script is required")
        return self


class JobCreateResponse(BaseModel):
    job_id: str
    status: str


class JobEventOut(BaseModel):
    id: int
    job_id: str
    stage: str
    status: str
    message: str
    created_at: datetime


class ClipOut(BaseModel):
    scene_index: int
    video_ref: str
    last_frame_ref: str = ""
    duration_s: float


class JobOut(BaseModel):
    id: str
    owner_id: str
    prompt: str
    aspect_ratio: str
    stage: Optional[str]
    status: str
    progress: int
    stage_display: str
    script: Optional[Script]
    clips: list[ClipOut]
    audio_ref: Optional[str]
    final_video_ref: Optional[str]
    error_message: Optional[str]
    meta: dict[str, object]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]
