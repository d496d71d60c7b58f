"""Cached server-side image fetcher behind the SSRF guard."""

import base64
import logging
import re
from dataclasses import dataclass

import aiohttp

from nkshield.errors import NkShieldError, ValidationError
from nkshield.ssrf import validate_proxy_url
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.image_proxy")

IMAGE_CACHE_PREFIX = "img-cache:"
IMAGE_CACHE_TTL = 60 * 60 * 24 * 30
MAX_CACHEABLE_SIZE = 4 * 1024 * 1024
MAX_IMAGE_SIZE = 10 * 1024 * 1024
ALLOWED_CONTENT_PREFIXES = ("image/",)
USER_AGENT = "Mozilla/5.0 (compatible; NeuroklastImageProxy/1.0)"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)

_DRIVE_PATTERNS = (
    re.compile(r"drive\.google\.com/file/d/([^/?#]+)"),
    re.compile(r"drive\.google\.com/open\?id=([^&#]+)"),
    re.compile(r"drive\.google\.com/uc\?[^#]*?id=([^&#]+)"),
    re.compile(r"lh3\.googleusercontent\.com/d/([^/?#]+)"),
)


class UpstreamError(NkShieldError):
    """Raised when the upstream image host fails (HTTP 502)."""

    pass


@dataclass
class ProxiedImage:
    body: bytes
    content_type: str
    cached: bool = False


def to_direct_url(url: str) -> str:
    """Rewrite Google Drive share links to their direct download form."""
    for pattern in _DRIVE_PATTERNS:
        match = pattern.search(url)
        if match:
            return f"https://drive.google.com/uc?export=view&id={match.group(1)}"
    return url


class ImageProxy:
    """Fetches public images, caching small ones in the KV store."""

    def __init__(self, store: KVStore):
        self.store = store
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=REQUEST_TIMEOUT, headers={"User-Agent": USER_AGENT}
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def fetch(self, url: str) -> ProxiedImage:
        """
        Fetch an image by URL.

        Args:
            url: User-supplied image URL

        Returns:
            ProxiedImage with body and content type

        Raises:
            ValidationError: If the URL fails the SSRF guard or is not an image
            UpstreamError: If the upstream host fails
        """
        validate_proxy_url(url)
        direct_url = to_direct_url(url)
        cache_key = f"{IMAGE_CACHE_PREFIX}{direct_url}"

        try:
            cached = await self.store.get(cache_key)
            if isinstance(cached, dict) and cached.get("data") and cached.get("contentType"):
                return ProxiedImage(base64.b64decode(cached["data"]), cached["contentType"], cached=True)
        except (NkShieldError, ValueError) as e:
            logger.warning(f"Image cache read failed: {e}")

        session = await self._get_session()
        try:
            # Redirects could lead to internal hosts, so they are not followed
            async with session.get(direct_url, allow_redirects=False) as resp:
                if resp.status != 200:
                    raise UpstreamError(f"Upstream returned {resp.status}")
                content_type = resp.headers.get("Content-Type", "image/jpeg").split(";")[0].strip()
                if not content_type.startswith(ALLOWED_CONTENT_PREFIXES):
                    raise ValidationError("Unsupported content type")
                body = await resp.content.read(MAX_IMAGE_SIZE + 1)
        except aiohttp.ClientError as e:
            raise UpstreamError(str(e)) from e
        if len(body) > MAX_IMAGE_SIZE:
            raise UpstreamError("Upstream image too large")

        if len(body) <= MAX_CACHEABLE_SIZE:
            try:
                await self.store.set(
                    cache_key,
                    {"data": base64.b64encode(body).decode("ascii"), "contentType": content_type},
                    ex=IMAGE_CACHE_TTL,
                )
            except NkShieldError as e:
                logger.warning(f"Image cache write failed: {e}")
        return ProxiedImage(body, content_type)
