import io
import logging
import os
from typing import List

import fitz  # PyMuPDF
from PIL import Image

from .cache import CachedDocument
from .errors import DocumentOpenError, PageIndexOutOfRange
from .pages import PdfPage

logger = logging.getLogger(__name__)

DEFAULT_SCALE = 2.0
JPEG_QUALITY = 90


def open_document(path: str) -> fitz.Document:
    if not os.path.isfile(path):
        raise DocumentOpenError(f"PDF not found in cache: {os.path.basename(path)}")
    try:
        doc = fitz.open(path, filetype="pdf")
    except RuntimeError as e:
        raise DocumentOpenError(f"Could not open {os.path.basename(path)}: {e}") from e
    if not doc.is_pdf:
        doc.close()
        raise DocumentOpenError(f"{os.path.basename(path)} is not a PDF document")
    return doc


def enumerate_pages(document: CachedDocument) -> List[PdfPage]:
    """Returns one reference per page of `document`, without rendering anything."""
    doc = open_document(document.path)
    try:
        page_count = doc.page_count
    finally:
        doc.close()
    return [PdfPage(document.file_name, i) for i in range(page_count)]


def render_page(path: str, index: int, scale: float = DEFAULT_SCALE, quality: int = JPEG_QUALITY) -> bytes:
    """
    Rasterizes page `index` of the PDF at `path` and returns it as JPEG bytes.

    The output is `scale` times the page's size in points. Every call opens
    its own document handle, so calls for different pages can run in parallel.
    """
    doc = open_document(path)
    try:
        if not 0 <= index < doc.page_count:
            raise PageIndexOutOfRange(
                f"Page {index} out of range for {os.path.basename(path)} ({doc.page_count} pages)"
            )
        try:
            page = doc.load_page(index)
            pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        except RuntimeError as e:
            raise DocumentOpenError(f"Failed to render page {index} of {os.path.basename(path)}: {e}") from e

        image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality)
        logger.debug("Rendered page %d of %s at %dx%d", index, os.path.basename(path), pix.width, pix.height)
        return buffer.getvalue()
    finally:
        doc.close()
