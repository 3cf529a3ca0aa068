"""Stage to percentage projection and the change-only progress stream."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from omnigen.core.constants import TERMINAL_STATES, JobStatus
from omnigen.core.stages import Stage, StageKind

logger = logging.getLogger(__name__)

SCENE_BAND_START = 15.0
SCENE_BAND_WIDTH = 70.0

# Every StageKind has an entry; scene kinds are resolved against the scene
# count, the rest are fixed.
_FIXED_PERCENT: dict[StageKind, Optional[float]] = {
    StageKind.SCRIPT_GENERATING: 5.0,
    StageKind.SCRIPT_COMPLETE: 15.0,
    StageKind.SCENE_GENERATING: None,
    StageKind.SCENE_COMPLETE: None,
    StageKind.AUDIO_GENERATING: 88.0,
    StageKind.AUDIO_COMPLETE: 92.0,
    StageKind.COMPOSING: 95.0,
    StageKind.COMPLETE: 100.0,
    StageKind.FAILED: 0.0,
}

_DISPLAY_NAME: dict[StageKind, str] = {
    StageKind.SCRIPT_GENERATING: "Writing script",
    StageKind.SCRIPT_COMPLETE: "Script ready",
    StageKind.SCENE_GENERATING: "Generating scene {scene} of {total}",
    StageKind.SCENE_COMPLETE: "Scene {scene} of {total} ready",
    StageKind.AUDIO_GENERATING: "Generating background music",
    StageKind.AUDIO_COMPLETE: "Background music ready",
    StageKind.COMPOSING: "Composing final video",
    StageKind.COMPLETE: "Complete",
    StageKind.FAILED: "Failed",
}


def _scene_total(stage: Stage, total_scenes: Optional[int]) -> int:
    total = int(total_scenes or 0)
    return max(total, stage.scene or 1, 1)


def progress_for_stage(stage: Stage, total_scenes: Optional[int] = None) -> float:
    fixed = _FIXED_PERCENT[stage.kind]
    if fixed is not None:
        return fixed
    total = _scene_total(stage, total_scenes)
    per_scene = SCENE_BAND_WIDTH / total
    done = stage.scene - 1 if stage.kind is StageKind.SCENE_GENERATING else stage.scene
    return SCENE_BAND_START + done * per_scene


def display_name(stage_token: str, meta: Optional[dict[str, object]] = None) -> str:
    stage = Stage.parse(stage_token)
    template = _DISPLAY_NAME[stage.kind]
    if stage.kind in {StageKind.SCENE_GENERATING, StageKind.SCENE_COMPLETE}:
        total = _scene_total(stage, _total_from_meta(meta))
        return template.format(scene=stage.scene, total=total)
    return template


def _total_from_meta(meta: Optional[dict[str, object]]) -> Optional[int]:
    if not meta:
        return None
    value = meta.get("total_scenes")
    return value if isinstance(value, int) else None


def progress_for_job(stage_token: Optional[str], status: str, meta: Optional[dict[str, object]] = None) -> int:
    if status == JobStatus.FAILED.value:
        return 0
    if status == JobStatus.COMPLETED.value:
        return 100
    if not stage_token:
        return 0
    return int(round(progress_for_stage(Stage.parse(stage_token), _total_from_meta(meta))))


def estimate_eta(elapsed_s: float, percent: float) -> float:
    """Seconds left, extrapolating elapsed time linearly over the percentage."""
    if percent <= 0 or percent >= 100:
        return 0.0
    return max(0.0, elapsed_s * 100.0 / percent - elapsed_s)


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    stage: Optional[str]
    status: str
    meta: dict[str, object] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_STATES


class ProgressTracker:
    """Turns a sequence of job snapshots into change-only update payloads."""

    def __init__(self, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._now = now
        self._last_stage: Optional[str] = None

    def observe(self, snapshot: JobSnapshot) -> Optional[dict[str, object]]:
        if snapshot.stage is None or snapshot.stage == self._last_stage:
            return None
        self._last_stage = snapshot.stage
        percent = progress_for_job(snapshot.stage, snapshot.status, snapshot.meta)
        elapsed = 0.0
        if snapshot.created_at is not None:
            created = snapshot.created_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            elapsed = max(0.0, (self._now() - created).total_seconds())
        return {
            "job_id": snapshot.job_id,
            "stage": snapshot.stage,
            "stage_display": display_name(snapshot.stage, snapshot.meta),
            "status": snapshot.status,
            "progress": percent,
            "eta_s": round(estimate_eta(elapsed, percent), 1),
            "metadata": snapshot.meta,
        }


SnapshotReader = Callable[[str], Optional[JobSnapshot]]


async def stream_progress(
    job_id: str,
    read_snapshot: SnapshotReader,
    interval_s: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    tracker: Optional[ProgressTracker] = None,
) -> AsyncIterator[dict[str, str]]:
    """Yield SSE events for one job until it reaches a terminal status."""
    tracker = tracker or ProgressTracker()
    seq = 0
    while True:
        try:
            snapshot = read_snapshot(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("progress read failed for job %s: %s", job_id, exc)
            seq += 1
            yield {"event": "error", "id": str(seq), "data": json.dumps({"message": "temporary read failure"})}
            await sleep(interval_s)
            continue

        if snapshot is None:
            seq += 1
            yield {"event": "done", "id": str(seq), "data": json.dumps({"status": "not_found"})}
            return

        update = tracker.observe(snapshot)
        if update is not None:
            seq += 1
            yield {"event": "update", "id": str(seq), "data": json.dumps(update, ensure_ascii=False)}

        if snapshot.is_terminal:
            seq += 1
            done = {"status": snapshot.status, "error_message": snapshot.error_message}
            yield {"event": "done", "id": str(seq), "data": json.dumps(done, ensure_ascii=False)}
            return

        await sleep(interval_s)
