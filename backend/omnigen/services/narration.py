"""Text-to-speech client for the optional narrator voiceover track."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from omnigen.core.deadline import Deadline
from omnigen.schemas.config import NarratorConfig

logger = logging.getLogger(__name__)

VOICES = {"male": "onyx", "female": "nova"}
RETRY_DELAYS_S = (1.0, 2.0, 4.0)


class NarrationError(RuntimeError):
    pass


class _RetryableSpeechError(NarrationError):
    pass


class SpeechClient:
    """OpenAI-style ``POST /v1/audio/speech``; returns the encoded audio bytes."""

    def __init__(
        self,
        cfg: NarratorConfig,
        *,
        fallback_api_key: str = "",
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.api_key = cfg.api_key or fallback_api_key
        self._transport = transport
        self._sleep = sleep

    def build_payload(self, text: str, voice: str) -> dict[str, object]:
        if voice not in VOICES:
            raise NarrationError(f"invalid voice selection: {voice!r} (expected one of {sorted(VOICES)})")
        return {
            "model": self.cfg.model,
            "input": text,
            "voice": VOICES[voice],
            "response_format": self.cfg.response_format,
            "speed": self.cfg.speed,
        }

    def _call(self, payload: dict[str, object], timeout: Optional[float]) -> bytes:
        url = f"{self.cfg.base_url.rstrip('/')}/v1/audio/speech"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            with httpx.Client(
                timeout=self.cfg.timeout_s if timeout is None else timeout, transport=self._transport
            ) as client:
                resp = client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise _RetryableSpeechError(f"narrator request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise _RetryableSpeechError(f"narrator request failed: {resp.status_code} {resp.text[:300]}")
        if resp.status_code >= 400:
            raise NarrationError(f"narrator request failed: {resp.status_code} {resp.text[:500]}")
        if not resp.content:
            raise NarrationError("narrator returned empty audio")
        return resp.content

    def synthesize(self, text: str, voice: str, deadline: Optional[Deadline] = None) -> bytes:
        """Generate speech for ``text``.

        Transport errors and 5xx answers are retried with a short backoff;
        any 4xx (rate limits included) fails at once.
        """
        if not self.api_key:
            raise NarrationError("narrator api_key is required")
        if not text.strip():
            raise NarrationError("narrator script is empty")
        deadline = deadline or Deadline.unbounded()
        payload = self.build_payload(text.strip(), voice)
        attempts = max(1, int(self.cfg.max_attempts))
        for attempt in range(1, attempts + 1):
            deadline.check("narrator generation")
            try:
                audio = self._call(payload, deadline.timeout(self.cfg.timeout_s))
            except _RetryableSpeechError as exc:
                if attempt >= attempts:
                    raise NarrationError(f"narrator failed after {attempts} attempts: {exc}") from exc
                delay = RETRY_DELAYS_S[min(attempt, len(RETRY_DELAYS_S)) - 1]
                logger.warning("narrator attempt %d/%d failed, retrying in %.0fs: %s", attempt, attempts, delay, exc)
                deadline.sleep(delay, sleeper=self._sleep, where="narrator generation")
                continue
            logger.info("narrator voiceover generated (%s, %d bytes)", voice, len(audio))
            return audio
        raise NarrationError("narrator produced no audio")

    def synthesize_to(self, text: str, voice: str, output_path: Path, deadline: Optional[Deadline] = None) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.synthesize(text, voice, deadline))
        return output_path
