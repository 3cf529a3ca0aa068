from __future__ import annotations

from pathlib import Path
from urllib.parse import parse_qs, unquote, urlsplit

import pytest

from omnigen.services.storage import LocalAssetStore, StorageError, is_remote_ref

KEY = "users/u1/jobs/job_1/clips/scene-001.mp4"


def _signed_parts(url: str) -> tuple[str, int, str]:
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    key = unquote(parts.path.split("/api/assets/", 1)[1])
    return key, int(query["expires"][0]), query["signature"][0]


def test_put_get_and_content_type(store: LocalAssetStore) -> None:
    assert store.put(KEY, b"mp4", "video/mp4") == KEY
    assert store.exists(KEY)
    assert store.get(KEY) == b"mp4"
    assert store.content_type(KEY) == "video/mp4"


def test_put_file_and_download_to(store: LocalAssetStore, tmp_path: Path) -> None:
    source = tmp_path / "local.mp3"
    source.write_bytes(b"mp3")
    key = store.put_file("users/u1/jobs/job_1/audio/background-music.mp3", source, "audio/mpeg")

    target = store.download_to(key, tmp_path / "copy" / "music.mp3")
    assert target.read_bytes() == b"mp3"


def test_data_uri(store: LocalAssetStore) -> None:
    key = "users/u1/jobs/job_1/thumbnails/scene-001.jpg"
    store.put(key, b"\xff\xd8\xff", "image/jpeg")
    uri = store.data_uri(key)
    assert uri == "data:image/jpeg;base64,/9j/"
    assert is_remote_ref(uri)


def test_missing_asset(store: LocalAssetStore, tmp_path: Path) -> None:
    with pytest.raises(StorageError):
        store.get("users/u1/missing.mp4")
    with pytest.raises(StorageError):
        store.data_uri("users/u1/missing.jpg")
    with pytest.raises(StorageError):
        store.download_to("users/u1/missing.mp4", tmp_path / "x")
    with pytest.raises(StorageError):
        store.presign("users/u1/missing.mp4")


@pytest.mark.parametrize("key", ["", "   ", "../etc/passwd", "users/../../secret"])
def test_invalid_keys_are_rejected(store: LocalAssetStore, key: str) -> None:
    with pytest.raises(StorageError):
        store.put(key, b"x", "text/plain")


def test_presigned_url_verifies(tmp_path: Path) -> None:
    now = [1_700_000_000.0]
    store = LocalAssetStore(tmp_path, "http://assets.test/", "secret", clock=lambda: now[0])
    store.put(KEY, b"mp4", "video/mp4")

    url = store.presign(KEY, ttl_s=60)
    assert url.startswith("http://assets.test/api/assets/users/u1/jobs/job_1/clips/scene-001.mp4?")

    key, expires, signature = _signed_parts(url)
    assert key == KEY
    assert expires == 1_700_000_060
    assert store.verify(key, expires, signature)

    assert not store.verify("users/u1/jobs/job_1/clips/scene-002.mp4", expires, signature)
    assert not store.verify(key, expires + 1, signature)
    assert not store.verify(key, expires, "0" * 64)

    now[0] += 61
    assert not store.verify(key, expires, signature)


def test_signatures_depend_on_secret(tmp_path: Path) -> None:
    first = LocalAssetStore(tmp_path, "http://a", "one")
    second = LocalAssetStore(tmp_path, "http://a", "two")
    first.put(KEY, b"mp4", "video/mp4")

    key, expires, signature = _signed_parts(first.presign(KEY))
    assert not second.verify(key, expires, signature)


def test_delete_prefix(store: LocalAssetStore) -> None:
    store.put("users/u1/jobs/job_1/clips/scene-001.mp4", b"1", "video/mp4")
    store.put("users/u1/jobs/job_1/clips/scene-002.mp4", b"2", "video/mp4")
    store.put("users/u1/jobs/job_1/final/video.mp4", b"f", "video/mp4")
    store.put("users/u1/jobs/job_2/final/video.mp4", b"g", "video/mp4")

    assert store.delete_prefix("users/u1/jobs/job_1") == 3
    assert not store.exists("users/u1/jobs/job_1/final/video.mp4")
    assert store.exists("users/u1/jobs/job_2/final/video.mp4")
    assert store.delete_prefix("users/u1/jobs/job_1") == 0


def test_is_remote_ref() -> None:
    assert is_remote_ref("https://cdn.test/a.png")
    assert is_remote_ref("data:image/png;base64,AAAA")
    assert not is_remote_ref("users/u1/uploads/a.png")
    assert not is_remote_ref(None)
