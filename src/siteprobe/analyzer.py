"""
Single-page analysis: fetch, parse once, reduce, then probe outbound links.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urldefrag, urljoin, urlsplit

import httpx

from .config import HttpConfig
from .fetch import build_client, fetch_page
from .models import AnalysisResult
from .parse import (
    Observation,
    collect_hrefs,
    count_headings,
    detect_html_version,
    detect_login_form,
    extract_title,
    observe,
    parse_html,
)
from .probe import probe_links

logger = logging.getLogger(__name__)

# Seconds kept back from the analysis budget once probing stops
PROBE_RESERVE = 0.5


@dataclass
class ResolvedLink:
    url: str
    internal: bool


def _host(url: str) -> str:
    """host[:port] of `url`, without userinfo."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    try:
        port = parts.port
    except ValueError:
        port = None
    return f"{host}:{port}" if port else host


def resolve_links(hrefs: List[str], base_url: str) -> List[ResolvedLink]:
    """Resolve hrefs against `base_url` and keep the first occurrence of each destination.

    Fragments are dropped before comparison, so "/about" and "/about#team" are
    the same destination. Links are internal when their host and port equal
    the base's; userinfo is ignored.

    Callers pass the final URL after redirects rather than the submitted one,
    so relative links resolve the way a browser would resolve them.
    """
    base_host = _host(base_url)
    seen = set()
    links = []
    for href in hrefs:
        try:
            resolved, _ = urldefrag(urljoin(base_url, href))
        except ValueError:
            logger.debug("Skipping unparsable href", extra={"fields": {"href": href}})
            continue
        if resolved in seen:
            continue
        seen.add(resolved)
        links.append(ResolvedLink(resolved, _host(resolved) == base_host))
    return links


def _observe_document(html: str) -> List[Observation]:
    return observe(parse_html(html))


class PageAnalyzer:
    """Runs the crawl/analysis pipeline for one URL at a time."""

    def __init__(self, http_config: Optional[HttpConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.http_config = http_config or HttpConfig()
        self._transport = transport

    async def analyze(self, url: str, timeout: Optional[float] = None) -> AnalysisResult:
        """Analyze `url`, finishing link probes within `timeout` seconds overall.

        Probes get whatever the fetch and parse left of the budget, minus a
        small reserve for assembling the result. Links still unprobed at that
        point are reported broken instead of failing the page.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        async with build_client(self.http_config, self._transport) as client:
            page = await fetch_page(client, url, self.http_config)

            # BeautifulSoup is CPU-bound; keep it off the event loop
            observations = await asyncio.to_thread(_observe_document, page.text)

            result = AnalysisResult(
                title=extract_title(observations),
                html_version=detect_html_version(observations),
                headings=count_headings(observations),
                has_login_form=detect_login_form(observations),
            )

            links = resolve_links(collect_hrefs(observations), page.final_url)
            result.internal_links_count = sum(1 for link in links if link.internal)
            result.external_links_count = len(links) - result.internal_links_count

            probe_budget = None
            if deadline is not None:
                probe_budget = deadline - loop.time() - min(PROBE_RESERVE, timeout * 0.1)
            statuses = await probe_links(client, [link.url for link in links], self.http_config,
                                         timeout=probe_budget)
            result.broken_links = [s.to_broken_link() for s in statuses if s.is_broken]

        logger.info("Page analyzed", extra={"fields": {
            "url": url,
            "internal_links": result.internal_links_count,
            "external_links": result.external_links_count,
            "broken_links": result.broken_links_count,
        }})
        return result
