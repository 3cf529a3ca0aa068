"""Chat-completions client that turns a prompt into a video script."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import httpx

from omnigen.schemas.config import ScriptConfig
from omnigen.schemas.job import Script
from omnigen.services.script_schema import validate_script_payload

logger = logging.getLogger(__name__)


class ScriptClientError(RuntimeError):
    pass


def parse_llm_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            message = first.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str):
                    return content.strip()
            content = first.get("content")
            if isinstance(content, str):
                return content.strip()

    output_text = payload.get("output_text")
    if isinstance(output_text, str):
        return output_text.strip()
    return ""


def extract_first_json_object(text: str) -> dict[str, Any]:
    text = text.strip()
    if not text:
        raise ValueError("empty llm output")

    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text).strip()
        text = re.sub(r"```$", "", text).strip()

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not match:
        raise ValueError("no json object found in llm output")

    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("llm output json must be object")
    return parsed


def build_script_prompt(prompt: str, aspect_ratio: str, max_scenes: int) -> str:
    return (
        f"Video idea: {prompt.strip()}\n"
        f"Aspect ratio: {aspect_ratio}\n"
        f"Write between 1 and {max_scenes} scenes, each 4 to 8 seconds long.\n"
        "Respond with JSON of the form "
        '{"title": str, "scenes": [{"index": int, "duration_s": number, "prompt": str}], '
        '"audio": {"enable_audio": bool, "music_mood": str, "music_style": str}}.'
    )


class ScriptClient:
    def __init__(self, cfg: ScriptConfig, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.cfg = cfg
        self._transport = transport

    def generate_text(self, *, system_prompt: str, user_prompt: str, timeout: Optional[float] = None) -> str:
        if not self.cfg.api_key:
            raise ScriptClientError("script api_key is required")
        url = f"{self.cfg.base_url.rstrip('/')}/v1/chat/completions"
        payload = {
            "model": self.cfg.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.cfg.temperature,
        }
        headers = {"Authorization": f"Bearer {self.cfg.api_key}", "Content-Type": "application/json"}

        try:
            with httpx.Client(timeout=timeout or self.cfg.timeout_s, transport=self._transport) as client:
                resp = client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise ScriptClientError(f"script request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ScriptClientError(f"script request failed: {resp.status_code} {resp.text[:500]}")
        return parse_llm_text(resp.json())

    def generate_script(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "16:9",
        max_scenes: int = 8,
        timeout: Optional[float] = None,
    ) -> Script:
        text = self.generate_text(
            system_prompt=self.cfg.system_prompt,
            user_prompt=build_script_prompt(prompt, aspect_ratio, max_scenes),
            timeout=timeout,
        )
        script = validate_script_payload(extract_first_json_object(text), max_scenes=max_scenes)
        logger.info("generated script %r with %d scene(s)", script.title, len(script.scenes))
        return script
