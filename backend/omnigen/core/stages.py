"""Pipeline stage tokens as a tagged variant.

Stage tokens are persisted as plain strings (``script_generating``,
``scene_3_complete`` ...). Everything that reasons about stages parses the
token into a :class:`Stage` first, so an unknown or misspelled token is an
error instead of silently mapping to a default.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class UnknownStageError(ValueError):
    pass


class StageKind(str, Enum):
    SCRIPT_GENERATING = "script_generating"
    SCRIPT_COMPLETE = "script_complete"
    SCENE_GENERATING = "scene_generating"
    SCENE_COMPLETE = "scene_complete"
    AUDIO_GENERATING = "audio_generating"
    AUDIO_COMPLETE = "audio_complete"
    COMPOSING = "composing"
    COMPLETE = "complete"
    FAILED = "failed"


SCENE_KINDS = {StageKind.SCENE_GENERATING, StageKind.SCENE_COMPLETE}

# Position of each kind in the fixed stage ordering. Scene stages share one
# slot and are ordered further by scene index.
_KIND_ORDER = {
    StageKind.SCRIPT_GENERATING: 0,
    StageKind.SCRIPT_COMPLETE: 1,
    StageKind.SCENE_GENERATING: 2,
    StageKind.SCENE_COMPLETE: 2,
    StageKind.AUDIO_GENERATING: 3,
    StageKind.AUDIO_COMPLETE: 4,
    StageKind.COMPOSING: 5,
    StageKind.COMPLETE: 6,
    StageKind.FAILED: 7,
}

_SCENE_TOKEN = re.compile(r"^scene_(?P<index>[1-9][0-9]*)_(?P<phase>generating|complete)$")


@dataclass(frozen=True)
class Stage:
    kind: StageKind
    scene: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind in SCENE_KINDS:
            if self.scene is None or self.scene < 1:
                raise UnknownStageError(f"scene stage requires a positive scene index: {self.kind.value}")
        elif self.scene is not None:
            raise UnknownStageError(f"stage {self.kind.value} does not take a scene index")

    @classmethod
    def parse(cls, token: str) -> "Stage":
        raw = (token or "").strip()
        match = _SCENE_TOKEN.match(raw)
        if match:
            kind = StageKind.SCENE_GENERATING if match.group("phase") == "generating" else StageKind.SCENE_COMPLETE
            return cls(kind, int(match.group("index")))
        try:
            kind = StageKind(raw)
        except ValueError as exc:
            raise UnknownStageError(f"unknown stage token: {token!r}") from exc
        if kind in SCENE_KINDS:
            raise UnknownStageError(f"scene stage token missing index: {token!r}")
        return cls(kind)

    @classmethod
    def scene_generating(cls, index: int) -> "Stage":
        return cls(StageKind.SCENE_GENERATING, index)

    @classmethod
    def scene_complete(cls, index: int) -> "Stage":
        return cls(StageKind.SCENE_COMPLETE, index)

    @property
    def token(self) -> str:
        if self.kind is StageKind.SCENE_GENERATING:
            return f"scene_{self.scene}_generating"
        if self.kind is StageKind.SCENE_COMPLETE:
            return f"scene_{self.scene}_complete"
        return self.kind.value

    @property
    def sort_key(self) -> tuple[int, int, int]:
        scene = self.scene or 0
        phase = 1 if self.kind is StageKind.SCENE_COMPLETE else 0
        return (_KIND_ORDER[self.kind], scene, phase)

    @property
    def is_terminal(self) -> bool:
        return self.kind in {StageKind.COMPLETE, StageKind.FAILED}

    def __str__(self) -> str:
        return self.token


SCRIPT_GENERATING = Stage(StageKind.SCRIPT_GENERATING)
SCRIPT_COMPLETE = Stage(StageKind.SCRIPT_COMPLETE)
AUDIO_GENERATING = Stage(StageKind.AUDIO_GENERATING)
AUDIO_COMPLETE = Stage(StageKind.AUDIO_COMPLETE)
COMPOSING = Stage(StageKind.COMPOSING)
COMPLETE = Stage(StageKind.COMPLETE)
FAILED = Stage(StageKind.FAILED)


def expected_sequence(scene_count: int) -> list[Stage]:
    """Full stage sequence of a successful run with ``scene_count`` scenes."""
    stages = [SCRIPT_GENERATING, SCRIPT_COMPLETE]
    for index in range(1, scene_count + 1):
        stages.append(Stage.scene_generating(index))
        stages.append(Stage.scene_complete(index))
    stages.extend([AUDIO_GENERATING, AUDIO_COMPLETE, COMPOSING, COMPLETE])
    return stages


def is_forward(current: Optional[Stage], new: Stage) -> bool:
    if current is None:
        return True
    return new.sort_key >= current.sort_key
