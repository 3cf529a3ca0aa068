"""Final video composition: concat clips, mux music and narration, burn caption, upload."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Optional, Sequence

from omnigen.core.constants import build_final_video_key
from omnigen.core.deadline import Deadline
from omnigen.schemas.job import CaptionSpec
from omnigen.services.captions import build_drawtext_filter, layout_caption
from omnigen.services.continuity import ClipResult
from omnigen.services.media import (
    MediaError,
    burn_caption,
    concat_clips,
    detect_font,
    ensure_uniform_clips,
    mux_audio,
    probe_video,
)
from omnigen.services.storage import LocalAssetStore, StorageError

logger = logging.getLogger(__name__)

STEP_TIMEOUT_S = 600.0


def caption_window(caption: CaptionSpec, duration_s: float, default_start_ratio: float = 0.8) -> tuple[float, float]:
    start = caption.start_s if caption.start_s is not None else duration_s * default_start_ratio
    return min(start, duration_s), duration_s


class MediaAssembler:
    def __init__(
        self,
        store: LocalAssetStore,
        *,
        owner_id: str,
        job_id: str,
        deadline: Optional[Deadline] = None,
        caption_default_start_ratio: float = 0.8,
        font_file: Optional[str] = None,
        music_volume: float = 0.35,
    ) -> None:
        self.store = store
        self.owner_id = owner_id
        self.job_id = job_id
        self.deadline = deadline or Deadline.unbounded()
        self.caption_default_start_ratio = caption_default_start_ratio
        self.font_file = font_file
        self.music_volume = music_volume

    def _timeout(self) -> Optional[float]:
        return self.deadline.timeout(STEP_TIMEOUT_S)

    def _fetch(self, key: str, target: Path) -> Path:
        self.deadline.check("composition download")
        try:
            return self.store.download_to(key, target)
        except StorageError as exc:
            raise MediaError(f"Failed to fetch {key}: {exc}") from exc

    def compose(
        self,
        clips: Sequence[ClipResult],
        audio_ref: Optional[str] = None,
        caption: Optional[CaptionSpec] = None,
        narrator_ref: Optional[str] = None,
    ) -> str:
        if not clips:
            raise MediaError("No clips to compose")

        with tempfile.TemporaryDirectory(prefix=f"omnigen-compose-{self.job_id}-") as tmp:
            workdir = Path(tmp)
            local_clips = [
                self._fetch(clip.video_ref, workdir / f"clip-{clip.scene_index:03d}.mp4") for clip in clips
            ]
            local_audio = self._fetch(audio_ref, workdir / "music.mp3") if audio_ref else None
            local_voice = self._fetch(narrator_ref, workdir / "narrator.mp3") if narrator_ref else None

            ensure_uniform_clips([probe_video(path, timeout=self._timeout()) for path in local_clips])

            self.deadline.check("concatenation")
            current = concat_clips(local_clips, workdir / "concat.mp4", timeout=self._timeout())

            if local_audio is not None or local_voice is not None:
                self.deadline.check("audio mux")
                current = self._mux(current, local_audio, local_voice, workdir)

            if caption is not None and caption.text.strip():
                current = self._burn_caption(current, caption, workdir)

            self.deadline.check("final upload")
            key = build_final_video_key(self.owner_id, self.job_id)
            try:
                final_ref = self.store.put_file(key, current, "video/mp4")
            except StorageError as exc:
                raise MediaError(f"Failed to upload final video: {exc}") from exc

        logger.info("job %s composed %d clip(s) into %s", self.job_id, len(clips), final_ref)
        return final_ref

    def _mux(self, video: Path, music: Optional[Path], voice: Optional[Path], workdir: Path) -> Path:
        output = workdir / "muxed.mp4"
        if music is None:
            return mux_audio(video, voice, output, timeout=self._timeout(), pad_audio=True)
        return mux_audio(
            video, music, output, timeout=self._timeout(), narration=voice, music_volume=self.music_volume
        )

    def _burn_caption(self, video: Path, caption: CaptionSpec, workdir: Path) -> Path:
        meta = probe_video(video, timeout=self._timeout())
        start, end = caption_window(caption, meta.duration, self.caption_default_start_ratio)
        layout = layout_caption(caption.text, start, end, meta.width, meta.height)
        if layout is None:
            logger.info("job %s caption window is empty, skipping overlay", self.job_id)
            return video
        font_file = self.font_file or detect_font()
        if font_file is None:
            logger.warning("no caption font found, ffmpeg will use its default font")
        text_file = workdir / "caption.txt"
        text_file.write_text(layout.wrapped_text, encoding="utf-8")
        self.deadline.check("caption burn-in")
        return burn_caption(
            video,
            build_drawtext_filter(layout, str(text_file), font_file),
            workdir / "captioned.mp4",
            timeout=self._timeout(),
        )
