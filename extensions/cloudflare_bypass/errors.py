class SourceError(Exception):
    """Base class for failures raised by the Cloudflare Bypass source."""


class FetchError(SourceError):
    """Network/transport failure, bad status, or a response without a body."""


class StorageError(SourceError):
    """The PDF cache could not create its directory or write a file."""


class DocumentOpenError(SourceError):
    """A cached file is missing, unreadable, or not a valid PDF."""


class PageIndexOutOfRange(SourceError):
    """A virtual page reference points past the document or is malformed."""
