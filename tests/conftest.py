"""Shared fixtures for the Cloudflare Bypass tests."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Sequence, Tuple

import fitz
import httpx
import pytest

from extensions.cloudflare_bypass.cache import PdfCache
from extensions.cloudflare_bypass.credentials import Credentials, CredentialStore

LETTER = (612, 792)
A5 = (420, 595)


def make_pdf_bytes(sizes: Sequence[Tuple[int, int]] = (LETTER,)) -> bytes:
    doc = fitz.open()
    for width, height in sizes:
        page = doc.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Page {doc.page_count}")
    data = doc.tobytes()
    doc.close()
    return data


class Recorder:
    """Routes requests to canned responses and remembers what was asked for."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    @property
    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


class ChunkStream:
    """Async byte stream that records whether it was read or closed."""

    def __init__(self, *chunks: bytes):
        self.chunks = list(chunks)
        self.read = False
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        self.read = True
        if not self.chunks:
            raise StopAsyncIteration
        return self.chunks.pop(0)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf_bytes([LETTER, LETTER, A5])


@pytest.fixture
def cache(tmp_path: Path) -> PdfCache:
    return PdfCache(str(tmp_path / "cache" / "pdf"))


@pytest.fixture
def credentials(tmp_path: Path) -> CredentialStore:
    return CredentialStore(
        str(tmp_path / "settings" / "cloudflare_bypass.json"),
        Credentials(cf_clearance_cookie="abc123", user_agent_override="TestBrowser/1.0"),
    )
