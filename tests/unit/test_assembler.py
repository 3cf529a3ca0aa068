from __future__ import annotations

from pathlib import Path

import pytest

from omnigen.schemas.job import CaptionSpec
from omnigen.services import assembler
from omnigen.services.assembler import MediaAssembler, caption_window
from omnigen.services.continuity import ClipResult
from omnigen.services.media import MediaError, VideoMeta


def _meta(width: int = 1920, height: int = 1080, duration: float = 18.0) -> VideoMeta:
    return VideoMeta(codec="h264", width=width, height=height, fps=24.0, duration=duration, has_audio=False)


class FakeMedia:
    """Stands in for the ffmpeg helpers and records what was asked of them."""

    def __init__(self, metas=None) -> None:
        self.metas = metas
        self.calls: list[str] = []
        self.filters: list[str] = []
        self.caption_files: list[str] = []
        self.mux_kwargs: list[dict] = []

    def install(self, monkeypatch) -> None:
        monkeypatch.setattr(assembler, "probe_video", self.probe_video)
        monkeypatch.setattr(assembler, "concat_clips", self.concat_clips)
        monkeypatch.setattr(assembler, "mux_audio", self.mux_audio)
        monkeypatch.setattr(assembler, "burn_caption", self.burn_caption)
        monkeypatch.setattr(assembler, "detect_font", lambda: None)

    def probe_video(self, path: Path, timeout=None) -> VideoMeta:
        if self.metas and path.name.startswith("clip-"):
            return self.metas[int(path.stem.split("-")[1]) - 1]
        return _meta()

    def concat_clips(self, clips, output: Path, timeout=None) -> Path:
        self.calls.append(f"concat:{len(clips)}")
        output.write_bytes(b"".join(clip.read_bytes() for clip in clips))
        return output

    def mux_audio(self, video: Path, audio: Path, output: Path, timeout=None, **kwargs) -> Path:
        self.calls.append("mux")
        self.mux_kwargs.append(kwargs)
        narration = kwargs.get("narration")
        extra = narration.read_bytes() if narration is not None else b""
        output.write_bytes(video.read_bytes() + audio.read_bytes() + extra)
        return output

    def burn_caption(self, video: Path, filter_expr: str, output: Path, timeout=None) -> Path:
        self.calls.append("caption")
        self.filters.append(filter_expr)
        self.caption_files.append((video.parent / "caption.txt").read_text(encoding="utf-8"))
        output.write_bytes(video.read_bytes() + b"+caption")
        return output


def _clips(store, count: int = 3) -> list[ClipResult]:
    clips = []
    for index in range(1, count + 1):
        key = f"users/u1/jobs/job_1/clips/scene-{index:03d}.mp4"
        store.put(key, f"c{index}".encode(), "video/mp4")
        clips.append(ClipResult(index, key, "", 6.0))
    return clips


def _assembler(store) -> MediaAssembler:
    return MediaAssembler(store, owner_id="u1", job_id="job_1")


def test_compose_concats_muxes_and_uploads(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)
    store.put("users/u1/jobs/job_1/audio/background-music.mp3", b"|music", "audio/mpeg")

    final_ref = _assembler(store).compose(_clips(store), "users/u1/jobs/job_1/audio/background-music.mp3")

    assert final_ref == "users/u1/jobs/job_1/final/video.mp4"
    assert fake.calls == ["concat:3", "mux"]
    assert store.get(final_ref) == b"c1c2c3|music"
    assert store.content_type(final_ref) == "video/mp4"


def test_compose_mixes_narration_under_music(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)
    store.put("users/u1/jobs/job_1/audio/background-music.mp3", b"|music", "audio/mpeg")
    store.put("users/u1/jobs/job_1/audio/narrator-voiceover.mp3", b"|voice", "audio/mpeg")

    final_ref = MediaAssembler(store, owner_id="u1", job_id="job_1", music_volume=0.2).compose(
        _clips(store, 2),
        "users/u1/jobs/job_1/audio/background-music.mp3",
        narrator_ref="users/u1/jobs/job_1/audio/narrator-voiceover.mp3",
    )

    assert fake.calls == ["concat:2", "mux"]
    assert fake.mux_kwargs[0]["music_volume"] == 0.2
    assert fake.mux_kwargs[0]["narration"].name == "narrator.mp3"
    assert store.get(final_ref) == b"c1c2|music|voice"


def test_compose_narration_only_pads_the_voice(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)
    store.put("users/u1/jobs/job_1/audio/narrator-voiceover.mp3", b"|voice", "audio/mpeg")

    final_ref = _assembler(store).compose(
        _clips(store, 1), narrator_ref="users/u1/jobs/job_1/audio/narrator-voiceover.mp3"
    )

    assert fake.mux_kwargs == [{"pad_audio": True}]
    assert store.get(final_ref) == b"c1|voice"


def test_compose_without_audio(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)

    final_ref = _assembler(store).compose(_clips(store, 2))
    assert fake.calls == ["concat:2"]
    assert store.get(final_ref) == b"c1c2"


def test_caption_defaults_to_last_fifth(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)

    _assembler(store).compose(_clips(store), caption=CaptionSpec(text="Ask your doctor about Lumiva."))

    assert fake.calls == ["concat:3", "caption"]
    assert fake.filters[0].endswith("enable='between(t,14.40,18.00)'")
    assert "textfile=" in fake.filters[0]
    assert "expansion=none" in fake.filters[0]
    assert fake.caption_files == ["Ask your doctor about Lumiva."]


def test_caption_with_percent_and_apostrophe_stays_out_of_the_filter(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)
    text = "Don't drive: 5% may feel drowsy."

    _assembler(store).compose(_clips(store), caption=CaptionSpec(text=text))

    assert "5%" not in fake.filters[0]
    assert "Don" not in fake.filters[0]
    assert fake.caption_files == [text]


def test_blank_caption_is_skipped(store, monkeypatch) -> None:
    fake = FakeMedia()
    fake.install(monkeypatch)
    _assembler(store).compose(_clips(store), caption=CaptionSpec(text="   "))
    assert "caption" not in fake.calls


def test_mismatched_clips_fail_before_concat(store, monkeypatch) -> None:
    fake = FakeMedia(metas=[_meta(), _meta(1280, 720), _meta()])
    fake.install(monkeypatch)

    with pytest.raises(MediaError) as excinfo:
        _assembler(store).compose(_clips(store))
    assert "Clip 2" in str(excinfo.value)
    assert fake.calls == []
    assert not store.exists("users/u1/jobs/job_1/final/video.mp4")


def test_missing_clip_asset_is_a_media_error(store, monkeypatch) -> None:
    FakeMedia().install(monkeypatch)
    clips = [ClipResult(1, "users/u1/jobs/job_1/clips/scene-001.mp4", "", 6.0)]
    with pytest.raises(MediaError):
        _assembler(store).compose(clips)


def test_no_clips(store) -> None:
    with pytest.raises(MediaError):
        _assembler(store).compose([])


def test_caption_window() -> None:
    assert caption_window(CaptionSpec(text="x"), 18.0) == (pytest.approx(14.4), 18.0)
    assert caption_window(CaptionSpec(text="x", start_s=3.0), 18.0) == (3.0, 18.0)
    assert caption_window(CaptionSpec(text="x", start_s=30.0), 18.0) == (18.0, 18.0)
