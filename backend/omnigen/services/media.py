"""Media processing helpers powered by ffmpeg/ffprobe."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

FONT_CANDIDATES = (
    "/usr/share/fonts/ttf-dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/ttf-dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    "/usr/share/fonts/truetype/liberation2/LiberationSans-Bold.ttf",
)


class MediaError(RuntimeError):
    pass


@dataclass
class VideoMeta:
    codec: str
    width: int
    height: int
    fps: float
    duration: float
    has_audio: bool

    def format_key(self) -> tuple[str, int, int, float]:
        return (self.codec, self.width, self.height, round(self.fps, 2))


@dataclass(frozen=True)
class BestEffort(Generic[T]):
    """Outcome of an optional side step: a value or a warning, never an exception."""

    value: Optional[T] = None
    warning: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def _run(cmd: list[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise MediaError(f"Command timed out after {exc.timeout:.0f}s: {' '.join(cmd)}") from exc
    except OSError as exc:
        raise MediaError(f"Command could not start: {' '.join(cmd)}: {exc}") from exc
    if proc.returncode != 0:
        raise MediaError(f"Command failed: {' '.join(cmd)}\n{proc.stderr.strip()[-2000:]}")
    return proc


def ffmpeg_available() -> bool:
    try:
        _run(["ffmpeg", "-version"])
        return True
    except MediaError:
        return False


def ffprobe_available() -> bool:
    try:
        _run(["ffprobe", "-version"])
        return True
    except MediaError:
        return False


def _fps_value(rate: Optional[str]) -> float:
    if not rate:
        return 30.0
    if "/" in rate:
        n, d = rate.split("/", maxsplit=1)
        try:
            denom = float(d)
            if denom == 0:
                return 30.0
            return float(n) / denom
        except ValueError:
            return 30.0
    try:
        return float(rate)
    except ValueError:
        return 30.0


def parse_probe_payload(payload: dict) -> VideoMeta:
    streams = payload.get("streams", [])

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise MediaError("No video stream found")

    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    duration = video_stream.get("duration") or payload.get("format", {}).get("duration") or 0
    return VideoMeta(
        codec=str(video_stream.get("codec_name") or "unknown"),
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
        fps=max(_fps_value(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")), 1.0),
        duration=float(duration),
        has_audio=audio_stream is not None,
    )


def probe_video(path: Path, timeout: Optional[float] = 60) -> VideoMeta:
    proc = _run(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_streams",
            "-show_format",
            "-of",
            "json",
            str(path),
        ],
        timeout=timeout,
    )
    try:
        payload = json.loads(proc.stdout)
    except json.JSONDecodeError as exc:
        raise MediaError(f"ffprobe returned unreadable output for {path.name}") from exc
    return parse_probe_payload(payload)


def detect_font(candidates: Sequence[str] = FONT_CANDIDATES) -> Optional[str]:
    for candidate in candidates:
        if Path(candidate).is_file():
            return candidate
    return None


def extract_last_frame(video: Path, output_image: Path, timeout: Optional[float] = 60) -> BestEffort[Path]:
    output_image.parent.mkdir(parents=True, exist_ok=True)
    try:
        _run(
            [
                "ffmpeg",
                "-sseof",
                "-1",
                "-i",
                str(video),
                "-update",
                "1",
                "-q:v",
                "2",
                "-y",
                str(output_image),
            ],
            timeout=timeout,
        )
    except MediaError as exc:
        return BestEffort(warning=f"last frame extraction failed: {exc}")
    if not output_image.is_file() or output_image.stat().st_size == 0:
        return BestEffort(warning="last frame extraction produced no image")
    return BestEffort(value=output_image)


def ensure_uniform_clips(metas: Sequence[VideoMeta]) -> None:
    """Stream-copy concatenation needs identical codec, size and frame rate."""
    if not metas:
        raise MediaError("No clips to concatenate")
    reference = metas[0].format_key()
    for index, meta in enumerate(metas[1:], start=2):
        if meta.format_key() != reference:
            raise MediaError(
                f"Clip {index} format {meta.format_key()} does not match clip 1 format {reference}; "
                "stream-copy concatenation requires identical codec, resolution and frame rate"
            )


def write_concat_list(clips: Sequence[Path], list_path: Path) -> Path:
    lines = []
    for clip in clips:
        escaped = clip.resolve().as_posix().replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return list_path


def concat_clips(clips: Sequence[Path], output_video: Path, timeout: Optional[float] = None) -> Path:
    output_video.parent.mkdir(parents=True, exist_ok=True)
    concat_txt = write_concat_list(clips, output_video.parent / "concat_list.txt")
    _run(
        [
            "ffmpeg",
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(concat_txt),
            "-c",
            "copy",
            str(output_video),
        ],
        timeout=timeout,
    )
    return output_video


def build_narration_mix(music_volume: float) -> str:
    return (
        f"[1:a]volume={music_volume:.2f}[music];"
        "[music][2:a]amix=inputs=2:duration=longest:dropout_transition=0[aout]"
    )


def mux_audio(
    video: Path,
    audio: Path,
    output_video: Path,
    timeout: Optional[float] = None,
    narration: Optional[Path] = None,
    music_volume: float = 0.35,
    pad_audio: bool = False,
) -> Path:
    """Put ``audio`` under the video stream, cut to the shorter of the two.

    With ``narration`` the music is lowered to ``music_volume`` and mixed with
    the voice track. ``pad_audio`` extends a short track with silence so the
    video keeps its full length.
    """
    output_video.parent.mkdir(parents=True, exist_ok=True)
    cmd = ["ffmpeg", "-y", "-i", str(video), "-i", str(audio)]
    if narration is not None:
        cmd += ["-i", str(narration), "-filter_complex", build_narration_mix(music_volume)]
        cmd += ["-map", "0:v:0", "-map", "[aout]"]
    else:
        cmd += ["-map", "0:v:0", "-map", "1:a:0"]
        if pad_audio:
            cmd += ["-af", "apad"]
    cmd += ["-c:v", "copy", "-c:a", "aac", "-b:a", "192k", "-shortest", str(output_video)]
    _run(cmd, timeout=timeout)
    return output_video


def burn_caption(video: Path, filter_expr: str, output_video: Path, timeout: Optional[float] = None) -> Path:
    output_video.parent.mkdir(parents=True, exist_ok=True)
    _run(
        [
            "ffmpeg",
            "-y",
            "-i",
            str(video),
            "-vf",
            filter_expr,
            "-c:v",
            "libx264",
            "-preset",
            "medium",
            "-crf",
            "21",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "copy",
            "-movflags",
            "+faststart",
            str(output_video),
        ],
        timeout=timeout,
    )
    return output_video
