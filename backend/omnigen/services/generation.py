"""Submit + poll clients for hosted video and music generation models."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from omnigen.core.deadline import Deadline
from omnigen.schemas.config import AudioConfig, VideoConfig

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    pass


class GenerationRequestError(GenerationError):
    """The provider refused to accept the request."""


class GenerationTransportError(GenerationError):
    """Checking status failed; the prediction itself may still be fine."""


class GenerationFailed(GenerationError):
    def __init__(self, handle: "GenerationHandle") -> None:
        self.handle = handle
        detail = handle.error or f"prediction {handle.status.value}"
        super().__init__(f"prediction {handle.prediction_id} {handle.status.value}: {detail}")


class GenerationTimeout(GenerationError):
    def __init__(self, prediction_id: str, attempts: int) -> None:
        self.prediction_id = prediction_id
        self.attempts = attempts
        super().__init__(f"prediction {prediction_id} not finished after {attempts} polls")


class GenerationStatus(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


_PROVIDER_STATUS = {
    "starting": GenerationStatus.SUBMITTED,
    "queued": GenerationStatus.SUBMITTED,
    "processing": GenerationStatus.PROCESSING,
    "succeeded": GenerationStatus.SUCCEEDED,
    "failed": GenerationStatus.FAILED,
    "canceled": GenerationStatus.CANCELED,
    "cancelled": GenerationStatus.CANCELED,
}


@dataclass(frozen=True)
class GenerationHandle:
    prediction_id: str
    status: GenerationStatus
    result_url: Optional[str] = None
    error: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in {GenerationStatus.SUCCEEDED, GenerationStatus.FAILED, GenerationStatus.CANCELED}

    def snapshot(self) -> dict[str, object]:
        return {"prediction_id": self.prediction_id, "status": self.status.value}


def _first_output_url(output: Any) -> Optional[str]:
    if isinstance(output, str) and output.strip():
        return output.strip()
    if isinstance(output, list):
        for item in output:
            url = _first_output_url(item)
            if url:
                return url
    if isinstance(output, dict):
        for key in ("url", "video", "audio"):
            url = _first_output_url(output.get(key))
            if url:
                return url
    return None


def parse_prediction(payload: dict[str, Any]) -> GenerationHandle:
    prediction_id = payload.get("id")
    if not isinstance(prediction_id, str) or not prediction_id:
        raise GenerationError("prediction payload missing id")
    raw_status = str(payload.get("status") or "").lower()
    status = _PROVIDER_STATUS.get(raw_status)
    if status is None:
        raise GenerationError(f"unknown prediction status: {raw_status!r}")
    error = payload.get("error")
    return GenerationHandle(
        prediction_id=prediction_id,
        status=status,
        result_url=_first_output_url(payload.get("output")) if status is GenerationStatus.SUCCEEDED else None,
        error=str(error) if error else None,
        raw=payload,
    )


class PredictionClient:
    """Replicate-style predictions API: ``POST /v1/predictions``, ``GET /v1/predictions/{id}``."""

    label = "prediction"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_version: str,
        timeout_s: float = 30,
        poll_interval_s: float = 5.0,
        max_attempts: int = 60,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model_version = model_version
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_attempts = max(1, int(max_attempts))
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "wait=0",
        }

    def _client(self, timeout: Optional[float] = None) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s if timeout is None else timeout, transport=self._transport)

    def submit_input(self, model_input: dict[str, Any], deadline: Optional[Deadline] = None) -> GenerationHandle:
        if not self.api_key:
            raise GenerationRequestError(f"{self.label} api_key is required")
        deadline = deadline or Deadline.unbounded()
        deadline.check(f"{self.label} submit")
        url = f"{self.base_url}/v1/predictions"
        payload = {"version": self.model_version, "input": model_input}
        try:
            with self._client(deadline.timeout(self.timeout_s)) as client:
                resp = client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise GenerationRequestError(f"{self.label} submit failed: {exc}") from exc
        if resp.status_code >= 400:
            raise GenerationRequestError(f"{self.label} submit failed: {resp.status_code} {resp.text[:500]}")
        try:
            handle = parse_prediction(resp.json())
        except (ValueError, GenerationError) as exc:
            raise GenerationRequestError(f"{self.label} submit returned unreadable body: {exc}") from exc
        logger.info("%s prediction %s submitted (%s)", self.label, handle.prediction_id, handle.status.value)
        return handle

    def poll(self, handle: GenerationHandle, deadline: Optional[Deadline] = None) -> GenerationHandle:
        deadline = deadline or Deadline.unbounded()
        url = f"{self.base_url}/v1/predictions/{handle.prediction_id}"
        try:
            with self._client(deadline.timeout(self.timeout_s)) as client:
                resp = client.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            raise GenerationTransportError(f"{self.label} poll failed: {exc}") from exc
        if resp.status_code >= 400:
            raise GenerationTransportError(f"{self.label} poll failed: {resp.status_code} {resp.text[:300]}")
        try:
            return parse_prediction(resp.json())
        except (ValueError, GenerationError) as exc:
            raise GenerationTransportError(f"{self.label} poll returned unreadable body: {exc}") from exc

    def wait(
        self,
        handle: GenerationHandle,
        deadline: Optional[Deadline] = None,
        on_poll: Optional[Callable[[GenerationHandle], None]] = None,
    ) -> GenerationHandle:
        """Poll until the prediction succeeds.

        A failed or canceled prediction raises ``GenerationFailed`` right away.
        Poll transport errors are logged and the loop keeps going; only running
        out of attempts raises ``GenerationTimeout``.
        """
        deadline = deadline or Deadline.unbounded()
        current = handle
        for attempt in range(1, self.max_attempts + 1):
            deadline.check(f"{self.label} polling")
            try:
                current = self.poll(current, deadline)
            except GenerationTransportError as exc:
                logger.warning(
                    "%s prediction %s poll %d/%d failed, will retry: %s",
                    self.label,
                    current.prediction_id,
                    attempt,
                    self.max_attempts,
                    exc,
                )
            else:
                if on_poll is not None:
                    on_poll(current)
                if current.status is GenerationStatus.SUCCEEDED:
                    if not current.result_url:
                        raise GenerationFailed(
                            GenerationHandle(
                                current.prediction_id,
                                GenerationStatus.FAILED,
                                error="prediction succeeded without an output url",
                                raw=current.raw,
                            )
                        )
                    logger.info("%s prediction %s succeeded after %d poll(s)", self.label, current.prediction_id, attempt)
                    return current
                if current.status in {GenerationStatus.FAILED, GenerationStatus.CANCELED}:
                    raise GenerationFailed(current)
            if attempt < self.max_attempts:
                deadline.sleep(self.poll_interval_s, sleeper=self._sleep, where=f"{self.label} polling")
        raise GenerationTimeout(current.prediction_id, self.max_attempts)

    def download(self, url: str, output_path: Path, deadline: Optional[Deadline] = None) -> Path:
        deadline = deadline or Deadline.unbounded()
        deadline.check(f"{self.label} download")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._client(deadline.timeout(180)) as client:
                with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    with output_path.open("wb") as f:
                        for chunk in resp.iter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as exc:
            raise GenerationError(f"{self.label} download failed: {exc}") from exc
        return output_path


def map_video_duration(seconds: float) -> int:
    if seconds <= 4:
        return 4
    if seconds <= 6:
        return 6
    return 8


def map_video_aspect_ratio(aspect_ratio: str) -> str:
    if aspect_ratio in {"16:9", "9:16"}:
        return aspect_ratio
    logger.warning("video model does not support aspect ratio %s, using 16:9", aspect_ratio)
    return "16:9"


@dataclass(frozen=True)
class VideoRequest:
    prompt: str
    duration_s: float
    aspect_ratio: str = "16:9"
    start_image: Optional[str] = None


class VideoGenerationClient(PredictionClient):
    label = "video"

    def __init__(self, *, resolution: str = "1080p", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.resolution = resolution

    @classmethod
    def from_config(cls, cfg: VideoConfig, **kwargs: Any) -> "VideoGenerationClient":
        return cls(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            model_version=cfg.model_version,
            resolution=cfg.resolution,
            timeout_s=cfg.timeout_s,
            poll_interval_s=cfg.poll_interval_s,
            max_attempts=cfg.max_attempts,
            **kwargs,
        )

    def build_input(self, request: VideoRequest) -> dict[str, Any]:
        model_input: dict[str, Any] = {
            "prompt": request.prompt,
            "duration": map_video_duration(request.duration_s),
            "aspect_ratio": map_video_aspect_ratio(request.aspect_ratio),
            "resolution": self.resolution,
            "generate_audio": False,
        }
        if request.start_image:
            model_input["image"] = request.start_image
        return model_input

    def submit(self, request: VideoRequest, deadline: Optional[Deadline] = None) -> GenerationHandle:
        return self.submit_input(self.build_input(request), deadline)


_STOP_WORDS = {"a", "an", "the", "in", "on", "at", "to", "for", "of", "with"}


def extract_keywords(text: str, max_words: int = 3) -> str:
    keywords: list[str] = []
    for word in text.lower().split():
        word = word.strip(".,!?;:")
        if len(word) < 2 or word in _STOP_WORDS:
            continue
        keywords.append(word)
        if len(keywords) >= max_words:
            break
    return " ".join(keywords)


def build_music_prompt(context: str, mood: str, style: str) -> str:
    style = style.strip()
    style = style[:1].upper() + style[1:]
    keywords = extract_keywords(context)
    parts = [part for part in (style, mood.strip(), keywords) if part]
    prompt = " ".join(parts + (["background music"] if keywords else ["music"]))
    if len(prompt) < 10:
        prompt = f"{prompt} background music for video"
    if len(prompt) > 300:
        prompt = prompt[:297] + "..."
    return prompt


def build_lyrics(duration_s: float) -> str:
    if duration_s <= 15:
        return "[intro]\n[verse]\n[outro]"
    if duration_s <= 30:
        return "[intro]\n[verse]\n[chorus]\n[outro]"
    if duration_s <= 60:
        return "[intro]\n[verse]\n[chorus]\n[verse]\n[chorus]\n[outro]"
    return "[intro]\n[verse]\n[chorus]\n[bridge]\n[verse]\n[chorus]\n[outro]"


@dataclass(frozen=True)
class AudioRequest:
    context: str
    duration_s: float
    mood: str = ""
    style: str = ""
    prompt: Optional[str] = None


class AudioGenerationClient(PredictionClient):
    label = "audio"

    def __init__(self, *, audio_format: str = "mp3", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.audio_format = audio_format

    @classmethod
    def from_config(cls, cfg: AudioConfig, **kwargs: Any) -> "AudioGenerationClient":
        return cls(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            model_version=cfg.model_version,
            audio_format=cfg.audio_format,
            timeout_s=cfg.timeout_s,
            poll_interval_s=cfg.poll_interval_s,
            max_attempts=cfg.max_attempts,
            **kwargs,
        )

    def build_input(self, request: AudioRequest) -> dict[str, Any]:
        prompt = request.prompt or build_music_prompt(request.context, request.mood, request.style)
        return {
            "prompt": prompt,
            "lyrics": build_lyrics(request.duration_s),
            "sample_rate": 44100,
            "bitrate": 256000,
            "audio_format": self.audio_format,
        }

    def submit(self, request: AudioRequest, deadline: Optional[Deadline] = None) -> GenerationHandle:
        return self.submit_input(self.build_input(request), deadline)
