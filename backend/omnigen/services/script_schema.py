"""Validation for generated multi-scene script JSON."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from omnigen.schemas.job import Script

REQUIRED_FIELDS = {"title", "scenes"}


class ScriptSchemaError(ValueError):
    pass


def _normalize_scene(raw: Any, position: int) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ScriptSchemaError(f"scene {position} must be an object")
    prompt = raw.get("prompt") or raw.get("visual_prompt") or raw.get("description")
    duration = raw.get("duration_s", raw.get("duration"))
    return {
        "index": raw.get("index", raw.get("scene_number", position)),
        "duration_s": duration,
        "prompt": prompt,
        "start_image": raw.get("start_image"),
    }


def validate_script_payload(payload: dict[str, Any], max_scenes: int = 8) -> Script:
    missing = sorted(REQUIRED_FIELDS - set(payload.keys()))
    if missing:
        raise ScriptSchemaError(f"missing fields: {', '.join(missing)}")

    scenes = payload.get("scenes")
    if not isinstance(scenes, list) or not scenes:
        raise ScriptSchemaError("scenes must be a non-empty array")
    if len(scenes) > max_scenes:
        raise ScriptSchemaError(f"script has {len(scenes)} scenes, at most {max_scenes} allowed")

    data = {
        "title": payload.get("title") or "",
        "scenes": [_normalize_scene(raw, position) for position, raw in enumerate(scenes, start=1)],
    }
    if isinstance(payload.get("audio"), dict):
        data["audio"] = payload["audio"]
    if isinstance(payload.get("caption"), dict):
        data["caption"] = payload["caption"]

    try:
        return Script.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ScriptSchemaError(f"{location}: {first.get('msg')}") from exc
