import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

import httpx

from .cache import CachedDocument, PdfCache
from .errors import FetchError
from .parser import HtmlDocument, HtmlParser
from .pages import Page
from .pdf import enumerate_pages

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
HTML_CONTENT_TYPE = "text/html"
PDF_SUFFIX = ".pdf"


class ContentResolver:
    """
    Turns a chapter URL into a page list.

    A PDF response (or a PDF linked from an HTML response) is cached and
    split into one virtual page per PDF page. HTML without a PDF link is
    handed to the parser's image page list as-is.
    """

    def __init__(self, client: httpx.AsyncClient, cache: PdfCache, parser: HtmlParser):
        self.client = client
        self.cache = cache
        self.parser = parser

    @asynccontextmanager
    async def _fetch(self, url: str) -> AsyncIterator[httpx.Response]:
        try:
            async with self.client.stream("GET", url) as response:
                if response.is_error:
                    raise FetchError(f"HTTP {response.status_code} fetching {url}")
                yield response
        except httpx.HTTPError as e:
            raise FetchError(f"Network error fetching {url}: {e}") from e

    async def _download(self, url: str) -> CachedDocument:
        cached = self.cache.lookup(url)
        if cached:
            logger.info("Linked PDF %s already cached, skipping download", url)
            return cached
        async with self._fetch(url) as response:
            content_type = response.headers.get("Content-Type", "").lower()
            if HTML_CONTENT_TYPE in content_type:
                # A guard or login page in place of the PDF must not become a cache entry.
                raise FetchError(f"Expected a PDF from {url}, got {content_type}")
            return await self.cache.store(url, response.aiter_bytes())

    async def resolve_pages(self, document_url: str) -> List[Page]:
        async with self._fetch(document_url) as response:
            content_type = response.headers.get("Content-Type", "")
            if PDF_CONTENT_TYPE in content_type.lower():
                logger.info("Direct PDF response from %s", document_url)
                document = await self.cache.store(document_url, response.aiter_bytes())
                html = None
            else:
                await response.aread()
                html = response.text
                if not html:
                    raise FetchError(f"Empty response body for {document_url}")

        if html is not None:
            parsed = HtmlDocument.parse(html, document_url)
            pdf_link = (parsed.first_link("a", "href", PDF_SUFFIX)
                        or parsed.first_link("iframe", "src", PDF_SUFFIX))
            if pdf_link is None:
                logger.info("No PDF link on %s, using HTML image pages", document_url)
                return self.parser.parse_image_page_list(parsed)
            logger.info("Found PDF link %s on %s", pdf_link, document_url)
            document = await self._download(pdf_link)

        refs = await asyncio.to_thread(enumerate_pages, document)
        logger.info("PDF %s has %d pages", document.file_name, len(refs))
        return [Page.from_ref(ref.index, ref) for ref in refs]
