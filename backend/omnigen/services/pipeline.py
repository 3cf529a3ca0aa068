"""End-to-end job execution pipeline."""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from sqlalchemy.orm import Session, sessionmaker

from omnigen.core.constants import TERMINAL_STATES, JobStatus, build_audio_key, build_narrator_key
from omnigen.core.deadline import Deadline, DeadlineExceeded
from omnigen.core.logging_config import setup_logging
from omnigen.core.settings import PATHS
from omnigen.core.stages import AUDIO_COMPLETE, AUDIO_GENERATING, COMPOSING, SCRIPT_COMPLETE, SCRIPT_GENERATING, Stage
from omnigen.db.session import SessionLocal
from omnigen.schemas.config import AppConfig
from omnigen.schemas.job import AudioSpec, CaptionSpec, Scene, Script
from omnigen.services import repository
from omnigen.services.assembler import MediaAssembler
from omnigen.services.config_store import load_config
from omnigen.services.continuity import ClipRenderer, ClipResult, SceneGenerationError, SceneRenderer, generate_clips
from omnigen.services.generation import (
    AudioGenerationClient,
    AudioRequest,
    GenerationFailed,
    GenerationHandle,
    GenerationTimeout,
    VideoGenerationClient,
)
from omnigen.services.narration import SpeechClient
from omnigen.services.script_client import ScriptClient
from omnigen.services.storage import LocalAssetStore

logger = logging.getLogger(__name__)

SCRIPT_FAILED = "Script generation failed."
AUDIO_FAILED = "Background music generation failed."
NARRATOR_FAILED = "Voiceover generation failed."
COMPOSE_FAILED = "Video composition failed."
UNEXPECTED_FAILED = "Job failed unexpectedly."
MAX_DETAIL_CHARS = 200


class PipelineError(RuntimeError):
    pass


class StageFailure(PipelineError):
    """A stage gave up; ``prefix`` names the stage in the stored reason."""

    def __init__(self, prefix: str, cause: BaseException) -> None:
        self.prefix = prefix
        self.cause = cause
        super().__init__(f"{prefix} {cause}")


def scene_failed_prefix(scene_index: int) -> str:
    return f"Video generation failed at scene {scene_index}."


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, SceneGenerationError):
        exc = exc.cause
    if isinstance(exc, GenerationFailed):
        detail = exc.handle.error or exc.handle.status.value
        return f"provider rejected the request: {detail}"[:MAX_DETAIL_CHARS]
    if isinstance(exc, GenerationTimeout):
        return f"timed out waiting for provider after {exc.attempts} polls"
    text = str(exc).strip().splitlines()[0] if str(exc).strip() else exc.__class__.__name__
    return text[:MAX_DETAIL_CHARS]


def failure_reason(prefix: str, exc: BaseException) -> str:
    cause = exc.cause if isinstance(exc, SceneGenerationError) else exc
    if isinstance(cause, DeadlineExceeded):
        return f"Job exceeded its time budget of {int(cause.budget_s)}s."
    return f"{prefix} ({describe_error(exc)})"


class ScriptSource(Protocol):
    def generate_script(
        self, prompt: str, *, aspect_ratio: str = ..., max_scenes: int = ..., timeout: Optional[float] = ...
    ) -> Script: ...


class Narrator(Protocol):
    def synthesize_to(self, text: str, voice: str, output_path: Path, deadline: Optional[Deadline] = ...) -> Path: ...


class Composer(Protocol):
    def compose(
        self,
        clips: Sequence[ClipResult],
        audio_ref: Optional[str] = ...,
        caption: Optional[CaptionSpec] = ...,
        narrator_ref: Optional[str] = ...,
    ) -> str: ...


@dataclass(frozen=True)
class AudioTracks:
    music_ref: Optional[str] = None
    narrator_ref: Optional[str] = None


@dataclass(frozen=True)
class JobInputs:
    job_id: str
    owner_id: str
    prompt: str
    aspect_ratio: str
    start_image: Optional[str]
    script: Optional[Script]
    caption: Optional[CaptionSpec]


@dataclass
class PipelineContext:
    config: AppConfig
    store: LocalAssetStore
    script_client: ScriptSource
    video_client: VideoGenerationClient
    audio_client: AudioGenerationClient
    narrator_client: Optional[Narrator] = None
    session_factory: sessionmaker = field(default=SessionLocal)
    make_renderer: Optional[Callable[..., SceneRenderer]] = None
    make_assembler: Optional[Callable[..., Composer]] = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "PipelineContext":
        return cls(
            config=config,
            store=LocalAssetStore.from_config(PATHS.assets_root, config.storage),
            script_client=ScriptClient(config.script),
            video_client=VideoGenerationClient.from_config(config.video),
            audio_client=AudioGenerationClient.from_config(config.audio),
            narrator_client=SpeechClient(config.narrator, fallback_api_key=config.script.api_key),
        )

    def renderer(self, inputs: JobInputs, deadline: Deadline, on_handle) -> SceneRenderer:  # noqa: ANN001
        if self.make_renderer is not None:
            return self.make_renderer(inputs=inputs, deadline=deadline, on_handle=on_handle)
        return ClipRenderer(
            self.video_client,
            self.store,
            owner_id=inputs.owner_id,
            job_id=inputs.job_id,
            aspect_ratio=inputs.aspect_ratio,
            deadline=deadline,
            presign_ttl_s=self.config.storage.presign_ttl_s,
            inline_start_images=self.config.storage.inline_start_images,
            on_handle=on_handle,
        )

    def assembler(self, inputs: JobInputs, deadline: Deadline) -> Composer:
        if self.make_assembler is not None:
            return self.make_assembler(inputs=inputs, deadline=deadline)
        return MediaAssembler(
            self.store,
            owner_id=inputs.owner_id,
            job_id=inputs.job_id,
            deadline=deadline,
            caption_default_start_ratio=self.config.pipeline.caption_default_start_ratio,
            music_volume=self.config.narrator.music_volume,
        )


class _HandleRecorder:
    """Writes provider prediction snapshots to job metadata when they change."""

    def __init__(self, db: Session, job_id: str, key: str) -> None:
        self.db = db
        self.job_id = job_id
        self.key = key
        self._last: dict[str, object] = {}

    def __call__(self, handle: GenerationHandle, key: Optional[str] = None) -> None:
        snapshot = handle.snapshot()
        target = key or self.key
        if self._last.get(target) == snapshot:
            return
        self._last[target] = snapshot
        repository.patch_meta(self.db, self.job_id, **{target: snapshot})
        self.db.commit()


class JobRun:
    """One execution of one job; the only writer of its stage and status."""

    def __init__(self, ctx: PipelineContext, db: Session, inputs: JobInputs, deadline: Deadline) -> None:
        self.ctx = ctx
        self.db = db
        self.inputs = inputs
        self.deadline = deadline

    def _stage(self, stage: Stage, message: Optional[str] = None, **metadata: object) -> None:
        repository.update_stage(self.db, self.inputs.job_id, stage, message, **metadata)
        self.db.commit()
        logger.info("job %s -> %s", self.inputs.job_id, stage.token)

    def run(self) -> str:
        script = self._script_stage()
        clips = self._scene_stages(script)
        tracks = self._audio_stage(script, clips)
        return self._compose_stage(script, clips, tracks)

    def _script_stage(self) -> Script:
        self._stage(SCRIPT_GENERATING, "Preparing script")
        try:
            script = self.inputs.script
            if script is None:
                pipeline_cfg = self.ctx.config.pipeline
                script = self.ctx.script_client.generate_script(
                    self.inputs.prompt,
                    aspect_ratio=self.inputs.aspect_ratio,
                    max_scenes=pipeline_cfg.max_scenes,
                    timeout=self.deadline.timeout(self.ctx.config.script.timeout_s),
                )
                repository.set_script(self.db, self.inputs.job_id, script)
            elif len(script.scenes) > self.ctx.config.pipeline.max_scenes:
                raise PipelineError(
                    f"script has {len(script.scenes)} scenes, at most {self.ctx.config.pipeline.max_scenes} allowed"
                )
            self.deadline.check("script generation")
        except Exception as exc:  # noqa: BLE001
            raise StageFailure(SCRIPT_FAILED, exc) from exc

        self._stage(
            SCRIPT_COMPLETE,
            f"Script ready with {len(script.scenes)} scene(s)",
            title=script.title,
            total_scenes=len(script.scenes),
            scenes_completed=0,
            total_duration_s=script.total_duration_s,
        )
        return script

    def _scene_stages(self, script: Script) -> list[ClipResult]:
        job_id = self.inputs.job_id
        total = len(script.scenes)
        recorder = _HandleRecorder(self.db, job_id, "scene_prediction")
        current = {"scene": script.scenes[0].index}

        def on_handle(scene_index: int, handle: GenerationHandle) -> None:
            recorder(handle, key=f"scene_{scene_index}_prediction")

        def on_scene_start(scene: Scene, done: list[ClipResult]) -> None:
            current["scene"] = scene.index
            self._stage(
                Stage.scene_generating(scene.index),
                f"Generating scene {scene.index} of {total}",
                current_scene=scene.index,
                scenes_completed=len(done),
            )

        def on_scene_complete(clip: ClipResult, done: list[ClipResult]) -> None:
            repository.append_clip(self.db, job_id, clip.to_dict())
            metadata: dict[str, object] = {
                "scenes_completed": len(done),
                "scene_video_refs": [item.video_ref for item in done],
                "last_frame_ref": clip.last_frame_ref,
            }
            if clip.warning:
                metadata[f"scene_{clip.scene_index}_warning"] = clip.warning
            self._stage(Stage.scene_complete(clip.scene_index), f"Scene {clip.scene_index} of {total} ready", **metadata)

        start_image = self.inputs.start_image or script.scenes[0].start_image
        renderer = self.ctx.renderer(self.inputs, self.deadline, on_handle)
        try:
            return generate_clips(script.scenes, start_image, renderer, on_scene_start, on_scene_complete)
        except SceneGenerationError as exc:
            raise StageFailure(scene_failed_prefix(exc.scene_index), exc) from exc
        except DeadlineExceeded as exc:
            raise StageFailure(scene_failed_prefix(current["scene"]), exc) from exc

    def _audio_stage(self, script: Script, clips: Sequence[ClipResult]) -> AudioTracks:
        audio = script.audio
        if audio.voice and not audio.wants_narration:
            logger.warning("job %s has a narrator voice but no narrator script, skipping voiceover", self.inputs.job_id)
        if not audio.enable_audio and not audio.wants_narration:
            self._stage(AUDIO_GENERATING, "Background music disabled", audio_skipped=True)
            self._stage(AUDIO_COMPLETE, "Background music skipped", audio_ref=None)
            return AudioTracks()

        if audio.enable_audio:
            self._stage(AUDIO_GENERATING, "Generating background music")
        else:
            self._stage(AUDIO_GENERATING, "Generating narrator voiceover", audio_skipped=True)
        music_ref = self._music(script, clips) if audio.enable_audio else None
        narrator_ref = self._narration(audio) if audio.wants_narration else None

        if music_ref is not None:
            repository.set_audio_ref(self.db, self.inputs.job_id, music_ref)
        metadata: dict[str, object] = {"audio_ref": music_ref}
        if narrator_ref is not None:
            metadata["narrator_ref"] = narrator_ref
        self._stage(AUDIO_COMPLETE, "Audio tracks ready", **metadata)
        return AudioTracks(music_ref=music_ref, narrator_ref=narrator_ref)

    def _music(self, script: Script, clips: Sequence[ClipResult]) -> str:
        audio = script.audio
        client = self.ctx.audio_client
        recorder = _HandleRecorder(self.db, self.inputs.job_id, "audio_prediction")
        context = " ".join(part for part in (script.title, script.scenes[0].prompt) if part)
        request = AudioRequest(
            context=context,
            duration_s=sum(clip.duration_s for clip in clips),
            mood=audio.music_mood,
            style=audio.music_style,
            prompt=audio.prompt,
        )
        try:
            handle = client.submit(request, self.deadline)
            recorder(handle)
            handle = client.wait(handle, self.deadline, on_poll=recorder)
            with tempfile.TemporaryDirectory(prefix=f"omnigen-audio-{self.inputs.job_id}-") as tmp:
                local = client.download(handle.result_url, Path(tmp) / "music.mp3", self.deadline)
                return self.ctx.store.put_file(
                    build_audio_key(self.inputs.owner_id, self.inputs.job_id), local, "audio/mpeg"
                )
        except Exception as exc:  # noqa: BLE001
            raise StageFailure(AUDIO_FAILED, exc) from exc

    def _narration(self, audio: AudioSpec) -> str:
        try:
            if self.ctx.narrator_client is None:
                raise PipelineError("no narrator client configured")
            with tempfile.TemporaryDirectory(prefix=f"omnigen-narrator-{self.inputs.job_id}-") as tmp:
                local = self.ctx.narrator_client.synthesize_to(
                    audio.narrator_script or "", audio.voice or "", Path(tmp) / "narrator.mp3", self.deadline
                )
                return self.ctx.store.put_file(
                    build_narrator_key(self.inputs.owner_id, self.inputs.job_id), local, "audio/mpeg"
                )
        except Exception as exc:  # noqa: BLE001
            raise StageFailure(NARRATOR_FAILED, exc) from exc

    def _compose_stage(self, script: Script, clips: Sequence[ClipResult], tracks: AudioTracks) -> str:
        self._stage(COMPOSING, "Composing final video")
        caption = self.inputs.caption or script.caption
        try:
            final_ref = self.ctx.assembler(self.inputs, self.deadline).compose(
                clips, tracks.music_ref, caption, narrator_ref=tracks.narrator_ref
            )
        except Exception as exc:  # noqa: BLE001
            raise StageFailure(COMPOSE_FAILED, exc) from exc
        return final_ref


def _load_inputs(db: Session, job_id: str) -> Optional[JobInputs]:
    job = repository.get_job(db, job_id)
    if not job:
        logger.warning("job %s not found, nothing to run", job_id)
        return None
    if JobStatus(job.status) in TERMINAL_STATES:
        logger.info("job %s already %s, skipping", job_id, job.status)
        return None
    return JobInputs(
        job_id=job.id,
        owner_id=job.owner_id,
        prompt=job.prompt,
        aspect_ratio=job.aspect_ratio,
        start_image=job.start_image,
        script=repository.job_script(job),
        caption=repository.job_caption(job),
    )


def run_pipeline(job_id: str, ctx: PipelineContext, deadline: Optional[Deadline] = None) -> Optional[str]:
    """Run one job to completion or to its first unrecoverable error.

    Returns the final video reference, or None when the job failed or was not
    runnable. Failures are stored on the job; nothing above the stage level is
    retried.
    """
    deadline = deadline or Deadline(ctx.config.pipeline.job_timeout_s)
    db = ctx.session_factory()
    try:
        inputs = _load_inputs(db, job_id)
        if inputs is None:
            return None
        repository.mark_processing(db, job_id)
        db.commit()

        try:
            final_ref = JobRun(ctx, db, inputs, deadline).run()
        except StageFailure as exc:
            db.rollback()
            cause = exc.cause
            if deadline.expired() and not isinstance(cause, DeadlineExceeded):
                cause = DeadlineExceeded(deadline.budget_s)
            reason = failure_reason(exc.prefix, cause)
            logger.warning("job %s failed: %s", job_id, reason, exc_info=exc.cause)
            repository.mark_failed(db, job_id, reason)
            db.commit()
            return None

        repository.mark_complete(db, job_id, final_ref)
        db.commit()
        logger.info("job %s completed: %s", job_id, final_ref)
        return final_ref
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        logger.exception("job %s crashed", job_id)
        try:
            repository.mark_failed(db, job_id, f"{UNEXPECTED_FAILED} ({describe_error(exc)})")
            db.commit()
        except Exception:  # noqa: BLE001
            db.rollback()
            logger.exception("job %s could not be marked failed", job_id)
        raise
    finally:
        db.close()


def execute_job(job_id: str) -> Optional[str]:
    config = load_config()
    setup_logging(config.logging)
    return run_pipeline(job_id, PipelineContext.from_config(config))
