from __future__ import annotations

from pathlib import Path

import pytest

from omnigen.core.constants import JobStatus, build_scene_clip_key
from omnigen.core.deadline import Deadline
from omnigen.core.stages import expected_sequence
from omnigen.schemas.config import AppConfig
from omnigen.schemas.job import AudioSpec, CaptionSpec, Scene, Script
from omnigen.services import repository
from omnigen.services.continuity import ClipResult
from omnigen.services.generation import (
    GenerationFailed,
    GenerationHandle,
    GenerationStatus,
    GenerationTimeout,
)
from omnigen.services.narration import NarrationError
from omnigen.services.pipeline import PipelineContext, run_pipeline


def _script(count: int = 3, enable_audio: bool = True, **audio) -> Script:
    return Script(
        title="Morning coffee",
        scenes=[Scene(index=i, duration_s=6, prompt=f"coffee shot {i}") for i in range(1, count + 1)],
        audio=AudioSpec(enable_audio=enable_audio, music_mood="warm", music_style="acoustic", **audio),
    )


class FakeScriptClient:
    def __init__(self, script: Script = None, error: Exception = None) -> None:
        self.script = script
        self.error = error
        self.prompts: list[str] = []

    def generate_script(self, prompt, *, aspect_ratio="16:9", max_scenes=8, timeout=None) -> Script:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.script


class FakeAudioClient:
    def __init__(self, error: Exception = None) -> None:
        self.error = error
        self.requests: list = []

    def submit(self, request, deadline=None):
        self.requests.append(request)
        return GenerationHandle("audio-1", GenerationStatus.SUBMITTED)

    def wait(self, handle, deadline=None, on_poll=None):
        if self.error is not None:
            raise self.error
        done = GenerationHandle("audio-1", GenerationStatus.SUCCEEDED, result_url="https://cdn.test/music.mp3")
        if on_poll is not None:
            on_poll(done)
        return done

    def download(self, url, path: Path, deadline=None) -> Path:
        path.write_bytes(b"mp3")
        return path


class FakeNarrator:
    def __init__(self, error: Exception = None) -> None:
        self.error = error
        self.calls: list = []

    def synthesize_to(self, text, voice, output_path: Path, deadline=None) -> Path:
        self.calls.append((text, voice))
        if self.error is not None:
            raise self.error
        output_path.write_bytes(b"voice")
        return output_path


class FakeRenderer:
    def __init__(self, store, inputs, fail_at: int = 0, error: Exception = None, before=None) -> None:
        self.store = store
        self.inputs = inputs
        self.fail_at = fail_at
        self.error = error
        self.before = before
        self.start_images: list = []

    def __call__(self, scene: Scene) -> ClipResult:
        self.start_images.append(scene.start_image)
        if self.before is not None:
            self.before(scene)
        if scene.index == self.fail_at:
            raise self.error
        key = build_scene_clip_key(self.inputs.owner_id, self.inputs.job_id, scene.index)
        self.store.put(key, b"mp4", "video/mp4")
        return ClipResult(scene.index, key, f"frame-{scene.index}", 6.0)


class FakeAssembler:
    def __init__(self, calls: list) -> None:
        self.calls = calls

    def compose(self, clips, audio_ref=None, caption=None, narrator_ref=None) -> str:
        self.calls.append(
            {"clips": list(clips), "audio_ref": audio_ref, "caption": caption, "narrator_ref": narrator_ref}
        )
        return "users/u1/jobs/job_1/final/video.mp4"


class Harness:
    def __init__(self, session_factory, store, **renderer_kw) -> None:
        self.session_factory = session_factory
        self.store = store
        self.compose_calls: list = []
        self.renderers: list[FakeRenderer] = []
        self.script_client = FakeScriptClient(_script())
        self.audio_client = FakeAudioClient()
        self.narrator = FakeNarrator()
        self.renderer_kw = renderer_kw

    def _make_renderer(self, *, inputs, deadline, on_handle):
        renderer = FakeRenderer(self.store, inputs, **self.renderer_kw)
        self.renderers.append(renderer)
        return renderer

    def context(self) -> PipelineContext:
        return PipelineContext(
            config=AppConfig(),
            store=self.store,
            script_client=self.script_client,
            video_client=None,
            audio_client=self.audio_client,
            narrator_client=self.narrator,
            session_factory=self.session_factory,
            make_renderer=self._make_renderer,
            make_assembler=lambda *, inputs, deadline: FakeAssembler(self.compose_calls),
        )

    def create(self, **kw) -> None:
        with self.session_factory() as db:
            repository.create_job(db, job_id="job_1", owner_id="u1", **kw)
            db.commit()

    def job(self):
        with self.session_factory() as db:
            return repository.get_job(db, "job_1")

    def stages(self) -> list[str]:
        with self.session_factory() as db:
            return [event.stage for event in repository.list_events(db, "job_1") if event.stage]


def test_three_scene_job_runs_every_stage_in_order(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script(), start_image="https://cdn.test/product.png")

    final_ref = run_pipeline("job_1", harness.context())

    assert final_ref == "users/u1/jobs/job_1/final/video.mp4"
    assert harness.stages() == [stage.token for stage in expected_sequence(3)]

    job = harness.job()
    assert job.status == JobStatus.COMPLETED.value
    assert job.final_video_ref == final_ref
    assert job.audio_ref == "users/u1/jobs/job_1/audio/background-music.mp3"

    meta = repository.job_meta(job)
    assert meta["total_scenes"] == 3
    assert meta["scenes_completed"] == 3
    assert len(meta["scene_video_refs"]) == 3
    assert meta["audio_prediction"] == {"prediction_id": "audio-1", "status": "succeeded"}
    assert [clip["scene_index"] for clip in repository.job_clips(job)] == [1, 2, 3]

    assert harness.renderers[0].start_images == ["https://cdn.test/product.png", "frame-1", "frame-2"]
    call = harness.compose_calls[0]
    assert [clip.scene_index for clip in call["clips"]] == [1, 2, 3]
    assert call["audio_ref"] == job.audio_ref
    assert harness.audio_client.requests[0].duration_s == 18.0


def test_scene_failure_keeps_earlier_clips(session_factory, store) -> None:
    error = GenerationFailed(GenerationHandle("p", GenerationStatus.FAILED, error="content policy"))
    harness = Harness(session_factory, store, fail_at=2, error=error)
    harness.create(script=_script())

    assert run_pipeline("job_1", harness.context()) is None

    job = harness.job()
    assert job.status == JobStatus.FAILED.value
    assert job.stage == "failed"
    assert job.error_message.startswith("Video generation failed at scene 2.")
    assert "provider rejected the request: content policy" in job.error_message

    assert len(repository.job_clips(job)) == 1
    assert repository.job_meta(job)["scene_video_refs"] == ["users/u1/jobs/job_1/clips/scene-001.mp4"]
    assert store.exists("users/u1/jobs/job_1/clips/scene-001.mp4")
    assert harness.stages()[-2:] == ["scene_2_generating", "failed"]
    assert harness.compose_calls == []
    assert harness.audio_client.requests == []


def test_audio_timeout_fails_the_job(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.audio_client = FakeAudioClient(error=GenerationTimeout("audio-1", 60))
    harness.create(script=_script(2))

    assert run_pipeline("job_1", harness.context()) is None

    job = harness.job()
    assert job.error_message == (
        "Background music generation failed. (timed out waiting for provider after 60 polls)"
    )
    assert len(repository.job_clips(job)) == 2
    assert harness.compose_calls == []


def test_disabled_audio_is_skipped(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script(1, enable_audio=False))

    assert run_pipeline("job_1", harness.context()) is not None
    assert harness.audio_client.requests == []
    assert harness.compose_calls[0]["audio_ref"] is None
    assert "audio_complete" in harness.stages()
    assert repository.job_meta(harness.job())["audio_skipped"] is True


NARRATION = "Lumiva helps you sleep. Side effects may include drowsiness."


def test_narrator_track_is_generated_with_the_music(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script(2, narrator_script=NARRATION, voice="female"))

    assert run_pipeline("job_1", harness.context()) is not None

    assert harness.stages() == [stage.token for stage in expected_sequence(2)]
    assert harness.narrator.calls == [(NARRATION, "female")]
    narrator_key = "users/u1/jobs/job_1/audio/narrator-voiceover.mp3"
    assert store.get(narrator_key) == b"voice"
    assert repository.job_meta(harness.job())["narrator_ref"] == narrator_key
    call = harness.compose_calls[0]
    assert call["audio_ref"] == "users/u1/jobs/job_1/audio/background-music.mp3"
    assert call["narrator_ref"] == narrator_key


def test_narration_without_music(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script(1, enable_audio=False, narrator_script=NARRATION, voice="male"))

    assert run_pipeline("job_1", harness.context()) is not None
    assert harness.audio_client.requests == []
    call = harness.compose_calls[0]
    assert call["audio_ref"] is None
    assert call["narrator_ref"] == "users/u1/jobs/job_1/audio/narrator-voiceover.mp3"


def test_voice_without_narrator_script_is_skipped(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script(1, voice="male"))

    assert run_pipeline("job_1", harness.context()) is not None
    assert harness.narrator.calls == []
    assert harness.compose_calls[0]["narrator_ref"] is None


def test_narrator_failure_fails_the_job(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.narrator = FakeNarrator(error=NarrationError("narrator request failed: 400 bad voice"))
    harness.create(script=_script(1, narrator_script=NARRATION, voice="female"))

    assert run_pipeline("job_1", harness.context()) is None

    job = harness.job()
    assert job.error_message == "Voiceover generation failed. (narrator request failed: 400 bad voice)"
    assert harness.compose_calls == []


def test_job_time_budget(session_factory, store) -> None:
    now = [0.0]
    deadline = Deadline(60, clock=lambda: now[0])

    def slow_scene(scene: Scene) -> None:
        now[0] += 40
        deadline.check("video polling")

    harness = Harness(session_factory, store, before=slow_scene)
    harness.create(script=_script())

    assert run_pipeline("job_1", harness.context(), deadline=deadline) is None

    job = harness.job()
    assert job.error_message == "Job exceeded its time budget of 60s."
    assert len(repository.job_clips(job)) == 1


def test_prompt_only_job_generates_a_script(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.script_client = FakeScriptClient(_script(2))
    harness.create(prompt="An ad for a morning coffee brand", caption=CaptionSpec(text="Brewed fresh daily."))

    assert run_pipeline("job_1", harness.context()) is not None

    assert harness.script_client.prompts == ["An ad for a morning coffee brand"]
    job = harness.job()
    assert repository.job_script(job).title == "Morning coffee"
    assert repository.job_meta(job)["total_scenes"] == 2
    assert harness.compose_calls[0]["caption"].text == "Brewed fresh daily."


def test_script_failure(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.script_client = FakeScriptClient(error=RuntimeError("LLM HTTP 500: upstream error"))
    harness.create(prompt="anything")

    assert run_pipeline("job_1", harness.context()) is None

    job = harness.job()
    assert job.error_message == "Script generation failed. (LLM HTTP 500: upstream error)"
    assert harness.stages() == ["script_generating", "failed"]


def test_too_many_scenes_fail_in_script_stage(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script(9))

    assert run_pipeline("job_1", harness.context()) is None
    assert harness.job().error_message.startswith("Script generation failed. (script has 9 scenes")


def test_terminal_job_is_not_rerun(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script())
    with session_factory() as db:
        repository.mark_failed(db, "job_1", "cancelled by operator")
        db.commit()

    assert run_pipeline("job_1", harness.context()) is None
    assert harness.renderers == []
    assert harness.job().error_message == "cancelled by operator"


def test_missing_job(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    assert run_pipeline("nope", harness.context()) is None


def test_unexpected_error_marks_job_failed_and_propagates(session_factory, store) -> None:
    harness = Harness(session_factory, store)
    harness.create(script=_script())

    def broken_renderer(**kwargs):
        raise KeyError("renderer wiring")

    ctx = harness.context()
    ctx.make_renderer = broken_renderer

    with pytest.raises(KeyError):
        run_pipeline("job_1", ctx)
    assert harness.job().error_message.startswith("Job failed unexpectedly.")
