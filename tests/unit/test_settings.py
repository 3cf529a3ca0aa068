from __future__ import annotations

from pathlib import Path

from omnigen.core.settings import RUNTIME_DIR_ENV, build_paths, resolve_runtime_root


def test_runtime_root_defaults_next_to_backend(tmp_path: Path) -> None:
    assert resolve_runtime_root(tmp_path, environ={}) == tmp_path / "runtime"
    assert resolve_runtime_root(tmp_path, environ={RUNTIME_DIR_ENV: "  "}) == tmp_path / "runtime"


def test_runtime_root_override(tmp_path: Path) -> None:
    paths = build_paths(environ={RUNTIME_DIR_ENV: str(tmp_path / "rt")})
    assert paths.runtime_root == (tmp_path / "rt").resolve()
    assert paths.db_path == paths.runtime_root / "omnigen.sqlite3"
    assert paths.assets_root.is_dir()
