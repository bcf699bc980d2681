import logging
from typing import Optional

import httpx

from .credentials import Credentials, CredentialStore

logger = logging.getLogger(__name__)

CF_CLEARANCE_COOKIE = "cf_clearance"
CHALLENGE_STATUS_CODES = (403, 503)
DEFAULT_TIMEOUT = 60


def apply_credentials(request: httpx.Request, credentials: Credentials) -> httpx.Request:
    """Adds the clearance cookie and the user agent override to `request`."""
    token = credentials.cf_clearance
    if token:
        pairs = [
            pair.strip() for pair in request.headers.get("Cookie", "").split(";")
            if pair.strip() and not pair.strip().startswith(f"{CF_CLEARANCE_COOKIE}=")
        ]
        pairs.append(f"{CF_CLEARANCE_COOKIE}={token}")
        request.headers["Cookie"] = "; ".join(pairs)

    user_agent = credentials.user_agent
    if user_agent:
        request.headers["User-Agent"] = user_agent
    return request


def looks_like_challenge(response: httpx.Response) -> bool:
    # Advisory only: based on headers, the body is never read here.
    if response.status_code not in CHALLENGE_STATUS_CODES:
        return False
    if response.headers.get("cf-mitigated", "").lower() == "challenge":
        return True
    return "cloudflare" in response.headers.get("Server", "").lower()


class CredentialTransport(httpx.AsyncBaseTransport):
    """
    Wraps another transport and injects the stored credentials into every
    request passing through it. Responses and transport errors are handed back
    to the caller untouched; there are no retries.
    """

    def __init__(self, credentials: CredentialStore, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.credentials = credentials
        self.transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        apply_credentials(request, self.credentials.snapshot())
        response = await self.transport.handle_async_request(request)
        if looks_like_challenge(response):
            logger.warning(
                "Possible Cloudflare challenge for %s (HTTP %s). The cf_clearance cookie may have expired.",
                request.url, response.status_code,
            )
        return response

    async def aclose(self) -> None:
        await self.transport.aclose()


def build_client(
    credentials: CredentialStore,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=CredentialTransport(credentials, transport),
        follow_redirects=True,
        timeout=timeout,
    )
