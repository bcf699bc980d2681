import re
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel

from .errors import PageIndexOutOfRange

PDF_SCHEME = "pdf"
CACHE_FILE_RE = re.compile(r"[0-9a-f]+\.pdf")
PAGE_INDEX_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class ImagePage:
    url: str


@dataclass(frozen=True)
class PdfPage:
    file_name: str
    index: int

    def __post_init__(self):
        if not CACHE_FILE_RE.fullmatch(self.file_name):
            raise PageIndexOutOfRange(f"Invalid PDF cache file name: {self.file_name!r}")
        if self.index < 0:
            raise PageIndexOutOfRange(f"Negative page index: {self.index}")


PageRef = Union[ImagePage, PdfPage]


def to_image_url(ref: PageRef) -> str:
    """Serializes a page reference into the host's image URL field."""
    if isinstance(ref, PdfPage):
        return f"{PDF_SCHEME}:{ref.file_name}:{ref.index}"
    return ref.url


def parse_image_url(image_url: str) -> PageRef:
    if not image_url.startswith(f"{PDF_SCHEME}:"):
        return ImagePage(image_url)

    # Format: pdf:<file_name>:<index>
    parts = image_url.split(":")
    if len(parts) != 3:
        raise PageIndexOutOfRange(f"Malformed PDF page reference: {image_url!r}")
    if not PAGE_INDEX_RE.fullmatch(parts[2]):
        raise PageIndexOutOfRange(f"Malformed PDF page index in {image_url!r}")
    return PdfPage(parts[1], int(parts[2]))


class Page(BaseModel):
    index: int
    url: str = ""
    image_url: Optional[str] = None

    @classmethod
    def from_ref(cls, index: int, ref: PageRef, url: str = "") -> "Page":
        return cls(index=index, url=url, image_url=to_image_url(ref))

    def ref(self) -> Optional[PageRef]:
        if not self.image_url:
            return None
        return parse_image_url(self.image_url)


class MangaItem(BaseModel):
    title: str
    url: str
    thumbnail_url: Optional[str] = None
