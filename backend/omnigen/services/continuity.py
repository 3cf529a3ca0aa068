"""Sequential scene rendering with last-frame continuity."""

from __future__ import annotations

import logging
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from omnigen.core.constants import build_scene_clip_key, build_scene_frame_key
from omnigen.core.deadline import Deadline, DeadlineExceeded
from omnigen.schemas.job import Scene
from omnigen.services.generation import GenerationHandle, VideoGenerationClient, VideoRequest, map_video_duration
from omnigen.services.media import BestEffort, extract_last_frame
from omnigen.services.storage import LocalAssetStore, StorageError, is_remote_ref

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClipResult:
    scene_index: int
    video_ref: str
    last_frame_ref: str
    duration_s: float
    warning: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class SceneGenerationError(RuntimeError):
    def __init__(self, scene_index: int, cause: BaseException) -> None:
        self.scene_index = scene_index
        self.cause = cause
        super().__init__(f"scene {scene_index} failed: {cause}")


SceneRenderer = Callable[[Scene], ClipResult]


def generate_clips(
    scenes: Sequence[Scene],
    start_image: Optional[str],
    render_scene: SceneRenderer,
    on_scene_start: Optional[Callable[[Scene, list[ClipResult]], None]] = None,
    on_scene_complete: Optional[Callable[[ClipResult, list[ClipResult]], None]] = None,
) -> list[ClipResult]:
    """Render scenes one after another, feeding each clip's last frame forward.

    The first scene starts from ``start_image``; every later scene starts from
    the previous clip's last frame (empty when that frame could not be
    extracted). The first failure stops the loop with ``SceneGenerationError``.
    """
    last_frame = start_image or ""
    results: list[ClipResult] = []
    for scene in scenes:
        if on_scene_start is not None:
            on_scene_start(scene, results)
        transient = scene.model_copy(update={"start_image": last_frame or None})
        try:
            clip = render_scene(transient)
        except DeadlineExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SceneGenerationError(scene.index, exc) from exc
        results.append(clip)
        if on_scene_complete is not None:
            on_scene_complete(clip, results)
        last_frame = clip.last_frame_ref
    return results


class ClipRenderer:
    """Renders one scene: generate, download, store, then grab its last frame."""

    def __init__(
        self,
        client: VideoGenerationClient,
        store: LocalAssetStore,
        *,
        owner_id: str,
        job_id: str,
        aspect_ratio: str,
        deadline: Optional[Deadline] = None,
        presign_ttl_s: int = 3600,
        inline_start_images: bool = True,
        on_handle: Optional[Callable[[int, GenerationHandle], None]] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.owner_id = owner_id
        self.job_id = job_id
        self.aspect_ratio = aspect_ratio
        self.deadline = deadline or Deadline.unbounded()
        self.presign_ttl_s = presign_ttl_s
        self.inline_start_images = inline_start_images
        self.on_handle = on_handle

    def _start_image_url(self, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        if is_remote_ref(ref):
            return ref
        if self.inline_start_images:
            return self.store.data_uri(ref)
        return self.store.presign(ref, self.presign_ttl_s)

    def _report(self, scene_index: int, handle: GenerationHandle) -> None:
        if self.on_handle is not None:
            self.on_handle(scene_index, handle)

    def _store_last_frame(self, video: Path, scene_index: int, workdir: Path) -> BestEffort[str]:
        frame = extract_last_frame(video, workdir / f"scene-{scene_index:03d}.jpg", timeout=self.deadline.timeout(60))
        if not frame.ok:
            return BestEffort(warning=frame.warning)
        key = build_scene_frame_key(self.owner_id, self.job_id, scene_index)
        try:
            return BestEffort(value=self.store.put_file(key, frame.value, "image/jpeg"))
        except StorageError as exc:
            return BestEffort(warning=f"last frame upload failed: {exc}")

    def __call__(self, scene: Scene) -> ClipResult:
        request = VideoRequest(
            prompt=scene.prompt,
            duration_s=scene.duration_s,
            aspect_ratio=self.aspect_ratio,
            start_image=self._start_image_url(scene.start_image),
        )
        handle = self.client.submit(request, self.deadline)
        self._report(scene.index, handle)
        handle = self.client.wait(handle, self.deadline, on_poll=lambda h: self._report(scene.index, h))

        with tempfile.TemporaryDirectory(prefix=f"omnigen-scene-{scene.index:03d}-") as tmp:
            workdir = Path(tmp)
            local = self.client.download(handle.result_url, workdir / f"scene-{scene.index:03d}.mp4", self.deadline)
            clip_key = self.store.put_file(
                build_scene_clip_key(self.owner_id, self.job_id, scene.index), local, "video/mp4"
            )
            frame = self._store_last_frame(local, scene.index, workdir)

        if frame.warning:
            logger.warning("job %s scene %d: %s", self.job_id, scene.index, frame.warning)
        return ClipResult(
            scene_index=scene.index,
            video_ref=clip_key,
            last_frame_ref=frame.value or "",
            duration_s=float(map_video_duration(scene.duration_s)),
            warning=frame.warning,
        )
