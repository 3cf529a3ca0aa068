"""Pydantic schemas for persisted app configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class VideoConfig(BaseModel):
    base_url: str = "https://api.replicate.com"
    api_key: str = ""
    model_version: str = "google/veo-3.1:20ebd92c5919f20e8fa2e983bdb60016a99794c9accfab496ea25a68e0dbbaad"
    resolution: str = "1080p"
    timeout_s: int = 30
    poll_interval_s: float = 5.0
    max_attempts: int = 120


class AudioConfig(BaseModel):
    base_url: str = "https://api.replicate.com"
    api_key: str = ""
    model_version: str = "minimax/music-1.5:latest"
    audio_format: str = "mp3"
    timeout_s: int = 30
    poll_interval_s: float = 5.0
    max_attempts: int = 60


class ScriptConfig(BaseModel):
    base_url: str = "https://api.openai.com"
    api_key: str = ""
    model: str = "gpt-4o"
    timeout_s: int = 120
    temperature: float = 0.7
    system_prompt: str = (
        "You are an advertising scriptwriter. Turn the user's idea into a short multi-scene video "
        "script and return a single JSON object only."
    )


class NarratorConfig(BaseModel):
    base_url: str = "https://api.openai.com"
    # Falls back to the script api_key when empty.
    api_key: str = ""
    model: str = "tts-1"
    response_format: str = "mp3"
    speed: float = Field(default=1.0, ge=0.25, le=4.0)
    timeout_s: int = 60
    max_attempts: int = 3
    music_volume: float = Field(default=0.35, ge=0.0, le=1.0)


class StorageConfig(BaseModel):
    public_base_url: str = "http://127.0.0.1:8000"
    signing_secret: str = "change-me"
    presign_ttl_s: int = 3600
    # Send local start frames to the video provider as data: URIs instead of
    # presigned links, which only work when public_base_url is reachable.
    inline_start_images: bool = True


class PipelineConfig(BaseModel):
    job_timeout_s: int = 900
    stale_job_after_s: int = 1200
    progress_poll_interval_s: float = 1.0
    default_aspect_ratio: str = "16:9"
    max_scenes: int = 8
    caption_default_start_ratio: float = 0.8

    @model_validator(mode="after")
    def _check_stale_threshold(self) -> "PipelineConfig":
        if self.stale_job_after_s <= self.job_timeout_s:
            raise ValueError(
                f"stale_job_after_s ({self.stale_job_after_s}) must be greater than job_timeout_s ({self.job_timeout_s})"
            )
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class AppConfig(BaseModel):
    video: VideoConfig = Field(default_factory=VideoConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    script: ScriptConfig = Field(default_factory=ScriptConfig)
    narrator: NarratorConfig = Field(default_factory=NarratorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
