from __future__ import annotations

import logging

import requests

from heroframe.errors import TransientNetworkError, UpstreamProtocolError

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; HeroFrame/1.0)"


class ImageFetcher:
    """Download remote images (job outputs) with a bounded timeout."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: float = 30.0,
        max_bytes: int = 25 * 1024 * 1024,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch(self, url: str) -> bytes:
        if not url or not url.lower().startswith(("http://", "https://")):
            raise UpstreamProtocolError(f"Unsupported image URL: {url!r}")
        try:
            response = self.session.get(
                url, timeout=self.timeout, headers={"User-Agent": USER_AGENT}
            )
        except requests.Timeout as exc:
            raise TransientNetworkError(
                f"Timed out fetching image after {self.timeout:.0f}s", details={"url": url}
            ) from exc
        except requests.RequestException as exc:
            raise TransientNetworkError(
                f"Failed to fetch image: {exc}", details={"url": url}
            ) from exc

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Image host returned {response.status_code}", details={"url": url}
            )
        if response.status_code >= 400:
            raise UpstreamProtocolError(
                f"Image host returned {response.status_code}", details={"url": url}
            )

        content = response.content
        if not content:
            raise UpstreamProtocolError("Fetched image is empty", details={"url": url})
        if len(content) > self.max_bytes:
            raise UpstreamProtocolError(
                "Fetched image exceeds size limit", details={"url": url, "bytes": len(content)}
            )
        logger.info("image.fetched", extra={"url": url, "bytes": len(content)})
        return content

    def close(self) -> None:
        self.session.close()


__all__ = ["ImageFetcher", "USER_AGENT"]
