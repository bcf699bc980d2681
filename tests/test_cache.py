"""Tests for the content-addressed PDF cache."""
from __future__ import annotations

import asyncio
import hashlib
import os
import threading
from pathlib import Path

import pytest
from conftest import ChunkStream

from extensions.cloudflare_bypass.cache import PdfCache, get_cache_key
from extensions.cloudflare_bypass.errors import FetchError, StorageError

URL = "https://example.com/chapters/1.pdf"


def test_cache_key_is_md5_of_source() -> None:
    assert get_cache_key(URL) == hashlib.md5(URL.encode("utf-8")).hexdigest() + ".pdf"
    assert ":" not in get_cache_key("pdf:with:colons")


async def test_store_writes_stream(cache: PdfCache) -> None:
    document = await cache.store(URL, ChunkStream(b"%PDF-1.7 ", b"body"))

    assert document.file_name == get_cache_key(URL)
    assert Path(document.path).read_bytes() == b"%PDF-1.7 body"
    assert cache.lookup(URL) == document


async def test_second_store_returns_first_file_and_closes_stream(cache: PdfCache) -> None:
    first = await cache.store(URL, ChunkStream(b"first"))
    second_stream = ChunkStream(b"second")
    second = await cache.store(URL, second_stream)

    assert second.path == first.path
    assert Path(second.path).read_bytes() == b"first"
    assert second_stream.closed
    assert not second_stream.read


async def test_empty_stream_leaves_no_entry(cache: PdfCache) -> None:
    with pytest.raises(FetchError):
        await cache.store(URL, ChunkStream())

    assert cache.lookup(URL) is None
    assert os.listdir(cache.directory) == []


def test_zero_length_file_is_not_a_hit(cache: PdfCache) -> None:
    os.makedirs(cache.directory)
    Path(cache.path_for(get_cache_key(URL))).write_bytes(b"")
    assert cache.lookup(URL) is None


async def test_concurrent_stores_for_same_key(cache: PdfCache) -> None:
    class SlowStream(ChunkStream):
        async def __anext__(self) -> bytes:
            await asyncio.sleep(0)
            return await super().__anext__()

    streams = [SlowStream(b"copy-%d-" % i, b"tail") for i in range(5)]
    documents = await asyncio.gather(*(cache.store(URL, s) for s in streams))

    assert len({d.path for d in documents}) == 1
    assert os.listdir(cache.directory) == [get_cache_key(URL)]
    content = Path(documents[0].path).read_bytes()
    assert content.startswith(b"copy-") and content.endswith(b"-tail")
    assert sum(s.read for s in streams) == 1


async def test_unwritable_directory_raises_storage_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file")
    cache = PdfCache(str(blocker / "pdf"))

    with pytest.raises(StorageError):
        await cache.store(URL, ChunkStream(b"data"))


async def test_locks_are_dropped_after_writes(cache: PdfCache) -> None:
    await asyncio.gather(*(cache.store(URL, ChunkStream(b"data")) for _ in range(3)))
    await cache.store("https://example.com/other.pdf", ChunkStream(b"other"))

    assert cache._locks == {}
    assert not cache._lock_users


async def test_disk_work_runs_off_the_event_loop(cache: PdfCache, monkeypatch) -> None:
    loop_thread = threading.get_ident()
    threads = {}
    for name in ("makedirs", "replace"):
        original = getattr(os, name)

        def spy(*args, _name=name, _original=original, **kwargs):
            threads[_name] = threading.get_ident()
            return _original(*args, **kwargs)

        monkeypatch.setattr(os, name, spy)

    await cache.store(URL, ChunkStream(b"%PDF-1.7"))

    assert set(threads) == {"makedirs", "replace"}
    assert loop_thread not in threads.values()
