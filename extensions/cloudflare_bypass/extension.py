import asyncio
import json
import logging
import os
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

from .cache import PdfCache
from .client import build_client
from .credentials import CF_CLEARANCE_KEY, USER_AGENT_KEY, CredentialStore
from .errors import FetchError
from .pages import MangaItem, Page, PdfPage, parse_image_url
from .parser import IMAGE_SELECTOR, LISTING_SELECTOR, HtmlDocument, HtmlParser, SelectorParser
from .pdf import DEFAULT_SCALE, JPEG_QUALITY, render_page
from .resolver import ContentResolver

logger = logging.getLogger(__name__)

# Overwritten by the host's extension loader.
EXT_PATH = os.path.dirname(os.path.abspath(__file__))

SETTINGS_KEYS = (CF_CLEARANCE_KEY, USER_AGENT_KEY)


class ImageResponse(NamedTuple):
    content: bytes
    media_type: str


def load_package_info(ext_path: str) -> Dict[str, Any]:
    with open(os.path.join(ext_path, "package.json"), 'r', encoding='utf-8') as f:
        return json.load(f)


class CloudflareBypassSource:
    """
    A source for a site behind Cloudflare, using a cf_clearance cookie the
    user obtained in a browser. Chapters are either plain image pages or PDFs;
    PDF pages are rendered to JPEG on demand.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        credentials: CredentialStore,
        cache: PdfCache,
        parser: Optional[HtmlParser] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        render_scale: float = DEFAULT_SCALE,
        jpeg_quality: int = JPEG_QUALITY,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.cache = cache
        self.parser = parser or SelectorParser()
        self.client = client or build_client(credentials, transport)
        self.render_scale = render_scale
        self.jpeg_quality = jpeg_quality
        self.resolver = ContentResolver(self.client, cache, self.parser)

    @classmethod
    def from_package(
        cls,
        info: Dict[str, Any],
        ext_id: str,
        data_dir: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CloudflareBypassSource":
        selectors = info.get("selectors", {})
        parser = SelectorParser(
            listing_selector=selectors.get("listing", LISTING_SELECTOR),
            image_selector=selectors.get("images", IMAGE_SELECTOR),
        )
        return cls(
            name=info.get("name", ext_id),
            base_url=info["base_url"],
            credentials=CredentialStore.load(os.path.join(data_dir, "settings", f"{ext_id}.json")),
            cache=PdfCache(os.path.join(data_dir, "cache", "pdf")),
            parser=parser,
            transport=transport,
            render_scale=float(info.get("render_scale", DEFAULT_SCALE)),
            jpeg_quality=int(info.get("jpeg_quality", JPEG_QUALITY)),
        )

    def chapter_url(self, chapter: str) -> str:
        if chapter.startswith(("http://", "https://")):
            return chapter
        return f"{self.base_url}/{chapter.lstrip('/')}"

    async def _get(self, url: str) -> httpx.Response:
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"HTTP {e.response.status_code} fetching {url}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Network error fetching {url}: {e}") from e
        return response

    async def fetch_popular(self, page: int = 1) -> List[MangaItem]:
        url = f"{self.base_url}/popular?page={page}"
        response = await self._get(url)
        return self.parser.parse_listing(HtmlDocument.parse(response.text, url))

    async def fetch_page_list(self, chapter: str) -> List[Page]:
        return await self.resolver.resolve_pages(self.chapter_url(chapter))

    async def fetch_image(self, image_url: str) -> ImageResponse:
        ref = parse_image_url(image_url)
        if isinstance(ref, PdfPage):
            content = await asyncio.to_thread(
                render_page,
                self.cache.path_for(ref.file_name),
                ref.index,
                self.render_scale,
                self.jpeg_quality,
            )
            return ImageResponse(content, "image/jpeg")

        response = await self._get(ref.url)
        if not response.content:
            raise FetchError(f"Empty image body for {ref.url}")
        return ImageResponse(response.content, response.headers.get("Content-Type", "image/jpeg"))

    def settings_values(self) -> Dict[str, Optional[str]]:
        return self.credentials.snapshot().model_dump()

    def update_settings(self, values: Dict[str, Any]) -> Dict[str, Optional[str]]:
        unknown = set(values) - set(SETTINGS_KEYS)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return self.credentials.update(values).model_dump()

    async def aclose(self):
        await self.client.aclose()


def create_sources(
    ext_path: Optional[str] = None,
    data_dir: str = "data",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[CloudflareBypassSource]:
    ext_path = ext_path or EXT_PATH
    ext_id = os.path.basename(os.path.normpath(ext_path))
    return [CloudflareBypassSource.from_package(load_package_info(ext_path), ext_id, data_dir, transport)]


# --- Host extension contract ---

_source: Optional[CloudflareBypassSource] = None


def setup(data_dir: str):
    global _source
    _source = create_sources(EXT_PATH, data_dir)[0]
    logger.info("Cloudflare Bypass: source '%s' ready for %s", _source.name, _source.base_url)


def _get_source() -> CloudflareBypassSource:
    if _source is None:
        raise RuntimeError("Cloudflare Bypass extension has not been set up.")
    return _source


async def teardown():
    global _source
    if _source is not None:
        await _source.aclose()
        _source = None


async def get_popular(page: int = 1) -> List[Dict[str, Any]]:
    return [item.model_dump() for item in await _get_source().fetch_popular(page)]


async def get_chapter_pages(chapter: str) -> List[Dict[str, Any]]:
    return [page.model_dump() for page in await _get_source().fetch_page_list(chapter)]


async def fetch_image(image_url: str) -> ImageResponse:
    return await _get_source().fetch_image(image_url)


def get_settings() -> Dict[str, Optional[str]]:
    return _get_source().settings_values()


def update_settings(values: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return _get_source().update_settings(values)
