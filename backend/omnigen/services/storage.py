"""Local filesystem asset store with signed download URLs."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from omnigen.schemas.config import StorageConfig

logger = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"


class StorageError(RuntimeError):
    pass


class LocalAssetStore:
    """Keyed blob store rooted at a directory.

    Keys are relative POSIX paths (``users/u/jobs/j/clips/scene-001.mp4``);
    the returned reference is the key itself. Content types live in a sidecar
    file next to each blob.
    """

    def __init__(
        self,
        root: Path,
        public_base_url: str,
        secret: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self._secret = secret.encode("utf-8")
        self._clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, root: Path, cfg: StorageConfig) -> "LocalAssetStore":
        return cls(root, cfg.public_base_url, cfg.signing_secret)

    def _path(self, key: str) -> Path:
        clean = key.strip().lstrip("/")
        if not clean or ".." in Path(clean).parts:
            raise StorageError(f"invalid asset key: {key!r}")
        return self.root / clean

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            self._write_meta(target, content_type)
        except OSError as exc:
            raise StorageError(f"failed to store {key}: {exc}") from exc
        return key

    def put_file(self, key: str, source: Path, content_type: str) -> str:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
            self._write_meta(target, content_type)
        except OSError as exc:
            raise StorageError(f"failed to store {key} from {source}: {exc}") from exc
        logger.debug("stored asset %s (%d bytes)", key, target.stat().st_size)
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise StorageError(f"asset not found: {key}")
        return path.read_bytes()

    def download_to(self, key: str, target: Path) -> Path:
        path = self._path(key)
        if not path.is_file():
            raise StorageError(f"asset not found: {key}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, target)
        return target

    def data_uri(self, key: str) -> str:
        payload = base64.b64encode(self.get(key)).decode("ascii")
        return f"data:{self.content_type(key)};base64,{payload}"

    def local_path(self, key: str) -> Path:
        return self._path(key)

    def content_type(self, key: str) -> str:
        meta_path = self._meta_path(self._path(key))
        if not meta_path.is_file():
            return "application/octet-stream"
        data = json.loads(meta_path.read_text(encoding="utf-8"))
        return str(data.get("content_type") or "application/octet-stream")

    def delete_prefix(self, prefix: str) -> int:
        target = self._path(prefix)
        if not target.exists():
            return 0
        if target.is_file():
            target.unlink()
            self._meta_path(target).unlink(missing_ok=True)
            return 1
        removed = sum(1 for item in target.rglob("*") if item.is_file() and not item.name.endswith(_META_SUFFIX))
        shutil.rmtree(target, ignore_errors=True)
        return removed

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def presign(self, key: str, ttl_s: int = 3600) -> str:
        if not self.exists(key):
            raise StorageError(f"asset not found: {key}")
        expires = int(self._clock()) + int(ttl_s)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self.public_base_url}/api/assets/{quote(key)}?{query}"

    def verify(self, key: str, expires: int, signature: str) -> bool:
        if int(expires) < int(self._clock()):
            return False
        return hmac.compare_digest(self._signature(key, int(expires)), signature)

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + _META_SUFFIX)

    def _write_meta(self, path: Path, content_type: str) -> None:
        self._meta_path(path).write_text(json.dumps({"content_type": content_type}), encoding="utf-8")


def is_remote_ref(ref: Optional[str]) -> bool:
    return bool(ref) and str(ref).startswith(("http://", "https://", "data:"))
