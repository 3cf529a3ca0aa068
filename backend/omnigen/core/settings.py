"""Runtime locations and static app settings.

Everything the service writes (config, job database, huey queue, stored
assets) lives under one runtime directory. It defaults to ``runtime/`` next to
the backend and can be moved with ``OMNIGEN_RUNTIME_DIR``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

APP_VERSION = "0.1.0"
RUNTIME_DIR_ENV = "OMNIGEN_RUNTIME_DIR"


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    backend_root: Path
    runtime_root: Path
    assets_root: Path
    config_path: Path
    db_path: Path
    queue_path: Path

    def ensure(self) -> "AppPaths":
        self.runtime_root.mkdir(parents=True, exist_ok=True)
        self.assets_root.mkdir(parents=True, exist_ok=True)
        return self


def resolve_runtime_root(project_root: Path, environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    override = (env.get(RUNTIME_DIR_ENV) or "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return project_root / "runtime"


def build_paths(environ: Optional[Mapping[str, str]] = None) -> AppPaths:
    backend_root = Path(__file__).resolve().parents[2]
    project_root = backend_root.parent
    runtime_root = resolve_runtime_root(project_root, environ)
    return AppPaths(
        project_root=project_root,
        backend_root=backend_root,
        runtime_root=runtime_root,
        assets_root=runtime_root / "assets",
        config_path=runtime_root / "config.json",
        db_path=runtime_root / "omnigen.sqlite3",
        queue_path=runtime_root / "queue.sqlite",
    ).ensure()


PATHS = build_paths()
