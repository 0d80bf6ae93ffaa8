import asyncio

import httpx
import pytest

from reelflow.core.exceptions import StorageError
from reelflow.utils.storage import (
    LocalObjectStore,
    atomic_write_bytes,
    guess_suffix,
    local_path,
    object_key,
)


def test_put_bytes(tmp_path):
    store = LocalObjectStore(tmp_path, public_base_url="https://cdn.test/media/")

    url = asyncio.run(store.put(b"png-bytes", key="wf1/character/char-1.png"))

    assert url == "https://cdn.test/media/wf1/character/char-1.png"
    assert (tmp_path / "wf1" / "character" / "char-1.png").read_bytes() == b"png-bytes"


def test_put_url_copies_content(tmp_path):
    def handler(request):
        assert request.url == "https://provider.test/tmp/abc.mp4"
        return httpx.Response(200, content=b"video-bytes")

    store = LocalObjectStore(tmp_path, transport=httpx.MockTransport(handler))

    url = asyncio.run(store.put("https://provider.test/tmp/abc.mp4", key="wf1/video/video-3.mp4"))

    assert url == (tmp_path.resolve() / "wf1" / "video" / "video-3.mp4").as_uri()
    assert (tmp_path / "wf1" / "video" / "video-3.mp4").read_bytes() == b"video-bytes"


def test_failed_download_raises(tmp_path):
    store = LocalObjectStore(tmp_path, transport=httpx.MockTransport(lambda r: httpx.Response(404)))
    with pytest.raises(StorageError):
        asyncio.run(store.put("https://provider.test/expired.png", key="a.png"))


def test_keys_cannot_escape_the_store(tmp_path):
    store = LocalObjectStore(tmp_path / "media")
    with pytest.raises(StorageError):
        asyncio.run(store.put(b"x", key="../outside.txt"))


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "file.json"
    asyncio.run(atomic_write_bytes(target, b"one"))
    asyncio.run(atomic_write_bytes(target, b"two"))

    assert target.read_bytes() == b"two"
    assert [p.name for p in target.parent.iterdir()] == ["file.json"]


def test_object_key_and_suffix():
    assert object_key("wf 1", "video", "video-3", suffix=".mp4") == "wf_1/video/video-3.mp4"
    assert object_key("wf", "../../etc") == "wf/etc"
    assert guess_suffix("https://cdn.test/a/b.PNG?sig=1") == ".png"
    assert guess_suffix("https://cdn.test/a/b", default=".mp4") == ".mp4"


def test_put_file_url_copies_from_disk(tmp_path):
    source = tmp_path / "upload.png"
    source.write_bytes(b"local-bytes")
    store = LocalObjectStore(tmp_path / "media", public_base_url="https://cdn.test/media")

    url = asyncio.run(store.put(source.as_uri(), key="wf1/character/char-1.png"))

    assert url == "https://cdn.test/media/wf1/character/char-1.png"
    assert (tmp_path / "media" / "wf1" / "character" / "char-1.png").read_bytes() == b"local-bytes"


def test_local_path_only_handles_file_urls(tmp_path):
    assert local_path((tmp_path / "a.mp4").as_uri()) == tmp_path / "a.mp4"
    assert local_path("https://cdn.test/a.mp4") is None
