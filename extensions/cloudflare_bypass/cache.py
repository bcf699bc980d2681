import asyncio
import hashlib
import logging
import os
import tempfile
from collections import Counter
from contextlib import suppress
from dataclasses import dataclass
from typing import AsyncIterator, BinaryIO, Dict, Optional, Tuple

from .errors import FetchError, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedDocument:
    file_name: str
    path: str
    source_key: str


def get_cache_key(source_key: str) -> str:
    """Generates a safe filename from a URL."""
    return hashlib.md5(source_key.encode('utf-8')).hexdigest() + ".pdf"


async def _close_stream(chunks: AsyncIterator[bytes]):
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()


class PdfCache:
    """
    Content-addressed store for downloaded PDFs.

    A file that exists with a non-zero size is a complete entry; nothing is
    ever evicted. Writes for one key are serialized and land through a temp
    file + rename, so a reader never sees a partial PDF. Disk work runs in
    worker threads to keep the event loop free.
    """

    def __init__(self, directory: str):
        self.directory = directory
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users = Counter()

    def path_for(self, file_name: str) -> str:
        return os.path.join(self.directory, file_name)

    def lookup(self, source_key: str) -> Optional[CachedDocument]:
        file_name = get_cache_key(source_key)
        path = self.path_for(file_name)
        try:
            if os.path.getsize(path) > 0:
                return CachedDocument(file_name, path, source_key)
        except OSError:
            pass
        return None

    def _open_temp(self) -> Tuple[BinaryIO, str]:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".part")
        return os.fdopen(fd, 'wb'), tmp_path

    @staticmethod
    def _discard_temp(tmp_path: str):
        if os.path.exists(tmp_path):
            with suppress(OSError):
                os.remove(tmp_path)

    async def store(self, source_key: str, chunks: AsyncIterator[bytes]) -> CachedDocument:
        file_name = get_cache_key(source_key)
        lock = self._locks.setdefault(file_name, asyncio.Lock())
        self._lock_users[file_name] += 1
        try:
            async with lock:
                return await self._store_locked(source_key, file_name, chunks)
        finally:
            self._lock_users[file_name] -= 1
            if not self._lock_users[file_name]:
                del self._lock_users[file_name]
                del self._locks[file_name]

    async def _store_locked(self, source_key: str, file_name: str, chunks: AsyncIterator[bytes]) -> CachedDocument:
        cached = self.lookup(source_key)
        if cached:
            # The body is not needed, release the connection behind it.
            await _close_stream(chunks)
            logger.info("Cache hit for %s (%s)", source_key, file_name)
            return cached

        path = self.path_for(file_name)
        try:
            f, tmp_path = await asyncio.to_thread(self._open_temp)
        except OSError as e:
            raise StorageError(f"Could not prepare cache file for {source_key}: {e}") from e

        try:
            written = 0
            try:
                async for chunk in chunks:
                    await asyncio.to_thread(f.write, chunk)
                    written += len(chunk)
            finally:
                await asyncio.to_thread(f.close)
            if not written:
                raise FetchError(f"Empty response body for {source_key}")
            await asyncio.to_thread(os.replace, tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write cache file {path}: {e}") from e
        finally:
            await asyncio.to_thread(self._discard_temp, tmp_path)

        logger.info("Cached %s as %s (%d bytes)", source_key, file_name, written)
        return CachedDocument(file_name, path, source_key)
