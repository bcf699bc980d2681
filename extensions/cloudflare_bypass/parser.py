from dataclasses import dataclass
from typing import List, Optional, Protocol
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .pages import ImagePage, MangaItem, Page

LISTING_SELECTOR = "div.manga-list > div.manga-item"
IMAGE_SELECTOR = "img"
IMAGE_ATTRS = ("data-src", "data-lazy-src", "src")


@dataclass
class HtmlDocument:
    """Parsed markup together with the URL it was fetched from."""

    url: str
    soup: BeautifulSoup

    @classmethod
    def parse(cls, html: str, url: str) -> "HtmlDocument":
        return cls(url, BeautifulSoup(html, 'html.parser'))

    def absolute(self, link: str) -> str:
        return urljoin(self.url, link.strip())

    def first_link(self, tag: str, attr: str, suffix: str) -> Optional[str]:
        """First `tag[attr]` whose absolute URL ends with `suffix`."""
        for element in self.soup.find_all(tag, attrs={attr: True}):
            link = self.absolute(element[attr])
            if link.lower().endswith(suffix):
                return link
        return None


class HtmlParser(Protocol):
    def parse_listing(self, document: HtmlDocument) -> List[MangaItem]:
        ...

    def parse_image_page_list(self, document: HtmlDocument) -> List[Page]:
        ...


def _image_source(img: Tag) -> Optional[str]:
    for attr in IMAGE_ATTRS:
        value = img.get(attr)
        if value and value.strip():
            return value
    return None


class SelectorParser:
    """Generic CSS-selector scraping for listing pages and image chapters."""

    def __init__(self, listing_selector: str = LISTING_SELECTOR, image_selector: str = IMAGE_SELECTOR):
        self.listing_selector = listing_selector
        self.image_selector = image_selector

    def parse_listing(self, document: HtmlDocument) -> List[MangaItem]:
        items = []
        for element in document.soup.select(self.listing_selector):
            link = element.select_one("a")
            if not link or not link.get("href"):
                continue
            img = element.select_one("img")
            thumbnail = _image_source(img) if img else None
            items.append(MangaItem(
                title=link.get("title") or link.get_text(strip=True),
                url=link["href"],
                thumbnail_url=document.absolute(thumbnail) if thumbnail else None,
            ))
        return items

    def parse_image_page_list(self, document: HtmlDocument) -> List[Page]:
        pages = []
        for img in document.soup.select(self.image_selector):
            src = _image_source(img)
            if not src:
                continue
            pages.append(Page.from_ref(len(pages), ImagePage(document.absolute(src)), url=document.url))
        return pages
