from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from .config import HttpConfig
from .errors import FetchError, RedirectLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    headers: Dict[str, str]
    text: str
    truncated: bool = False


def _get_compression_headers() -> Dict[str, str]:
    """Get headers for compression support."""
    return {
        "Accept-Encoding": "gzip, deflate, br",  # br = Brotli
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }


def build_client(cfg: HttpConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Create the HTTP client shared by the page fetch and the link probes of one job."""
    headers = {
        "User-Agent": cfg.user_agent,
        **_get_compression_headers(),
    }
    return httpx.AsyncClient(
        http2=cfg.enable_http2,
        timeout=httpx.Timeout(cfg.timeout),
        headers=headers,
        follow_redirects=True,
        max_redirects=cfg.max_redirects,
        transport=transport,
    )


def _decode(content: bytes, encoding: Optional[str]) -> str:
    try:
        return content.decode(encoding or "utf-8", errors="ignore")
    except LookupError:
        return content.decode("utf-8", errors="ignore")


async def fetch_page(client: httpx.AsyncClient, url: str, cfg: HttpConfig) -> FetchedPage:
    """GET `url`, reading at most `cfg.max_response_size` bytes of body.

    Raises FetchError for transport failures and non-2xx responses, and
    RedirectLimitExceeded when the redirect chain is longer than allowed.
    """
    try:
        async with client.stream("GET", url, timeout=cfg.timeout) as response:
            if not response.is_success:
                raise FetchError(
                    f"HTTP error: {response.status_code} {response.reason_phrase}",
                    url=url,
                    status_code=response.status_code,
                )

            chunks = []
            received = 0
            truncated = False
            async for chunk in response.aiter_bytes():
                if received >= cfg.max_response_size:
                    truncated = True
                    break
                part = chunk[:cfg.max_response_size - received]
                chunks.append(part)
                received += len(part)
                if len(part) < len(chunk):
                    truncated = True
                    break

            if truncated:
                logger.warning("Response body truncated",
                               extra={"fields": {"url": url, "limit": cfg.max_response_size}})

            return FetchedPage(
                url=url,
                final_url=str(response.url),
                status_code=response.status_code,
                headers=dict(response.headers),
                text=_decode(b"".join(chunks), response.encoding),
                truncated=truncated,
            )
    except httpx.TooManyRedirects as e:
        raise RedirectLimitExceeded(
            f"stopped after {cfg.max_redirects} redirects", url=url
        ) from e
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise FetchError(f"failed to fetch URL: {e}", url=url) from e
