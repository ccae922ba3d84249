"""
Liveness probing for the outbound links of an analyzed page.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from .config import HttpConfig
from .errors import LinkProbeError
from .models import BrokenLink

logger = logging.getLogger(__name__)

PROBE_DEADLINE_EXCEEDED = "probe deadline exceeded"


@dataclass
class LinkStatus:
    url: str
    status_code: int = 0
    error: Optional[str] = None

    @property
    def is_broken(self) -> bool:
        return self.error is not None or self.status_code >= 400

    def to_broken_link(self) -> BrokenLink:
        return BrokenLink(link_url=self.url, status_code=self.status_code, error_message=self.error)


async def _request_status(client: httpx.AsyncClient, method: str, url: str, timeout: float) -> int:
    """Issue one request and return its status without reading the body."""
    try:
        async with client.stream(method, url, timeout=timeout) as response:
            return response.status_code
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise LinkProbeError(f"{method} failed: {e}", url=url) from e
    except (ValueError, UnicodeError) as e:
        # Malformed targets such as "http://" or an invalid punycode host
        raise LinkProbeError(f"{method} failed: invalid URL: {e}", url=url) from e


async def probe_link(client: httpx.AsyncClient, url: str, cfg: HttpConfig) -> LinkStatus:
    """HEAD the link; on a transport failure fall back to a single GET.

    An HTTP error status from HEAD is final. Only when both requests fail
    outright is the link reported with status 0 and the GET error.
    """
    try:
        return LinkStatus(url, await _request_status(client, "HEAD", url, cfg.head_timeout))
    except LinkProbeError as head_error:
        logger.debug("HEAD probe failed, retrying with GET",
                     extra={"fields": {"link": url, "error": str(head_error)}})

    try:
        return LinkStatus(url, await _request_status(client, "GET", url, cfg.get_timeout))
    except LinkProbeError as get_error:
        return LinkStatus(url, 0, str(get_error))


async def probe_links(client: httpx.AsyncClient, urls: List[str], cfg: HttpConfig,
                      timeout: Optional[float] = None) -> List[LinkStatus]:
    """Probe every URL with at most `cfg.probe_concurrency` requests in flight.

    Results are returned in the order of `urls`, whatever order the probes
    complete in. When `timeout` runs out, outstanding probes are cancelled and
    their links reported broken with status 0.
    """
    if not urls:
        return []
    sem = asyncio.Semaphore(cfg.probe_concurrency)

    async def _task(u: str) -> LinkStatus:
        async with sem:
            return await probe_link(client, u, cfg)

    tasks = [asyncio.create_task(_task(u)) for u in urls]
    try:
        if timeout is not None:
            timeout = max(timeout, 0.0)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if pending:
        logger.warning("Link probe deadline exceeded",
                       extra={"fields": {"unprobed": len(pending), "total": len(urls)}})

    return [
        LinkStatus(url, 0, PROBE_DEADLINE_EXCEEDED) if task in pending else task.result()
        for url, task in zip(urls, tasks)
    ]
