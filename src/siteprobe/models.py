"""
Records shared between the service, the analysis engine and the repository.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class URLStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class HeadingCounts:
    h1: int = 0
    h2: int = 0
    h3: int = 0
    h4: int = 0
    h5: int = 0
    h6: int = 0

    def increment(self, tag: str) -> None:
        setattr(self, tag, getattr(self, tag) + 1)


@dataclass
class BrokenLink:
    link_url: str
    status_code: int = 0
    error_message: Optional[str] = None
    url_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class URLRecord:
    """A submitted URL together with the metrics of its latest analysis."""
    url: str
    url_hash: str
    id: Optional[int] = None
    title: Optional[str] = None
    html_version: Optional[str] = None
    h1_count: int = 0
    h2_count: int = 0
    h3_count: int = 0
    h4_count: int = 0
    h5_count: int = 0
    h6_count: int = 0
    internal_links_count: int = 0
    external_links_count: int = 0
    broken_links_count: int = 0
    has_login_form: bool = False
    status: URLStatus = URLStatus.QUEUED
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def apply_result(self, result: "AnalysisResult") -> None:
        """Copy every metric of an analysis onto this record and mark it completed."""
        self.title = result.title or None
        self.html_version = result.html_version
        for level in range(1, 7):
            setattr(self, f"h{level}_count", getattr(result.headings, f"h{level}"))
        self.internal_links_count = result.internal_links_count
        self.external_links_count = result.external_links_count
        self.broken_links_count = result.broken_links_count
        self.has_login_form = result.has_login_form
        self.status = URLStatus.COMPLETED
        self.error_message = None

    def clear_metrics(self) -> None:
        self.title = None
        self.html_version = None
        for level in range(1, 7):
            setattr(self, f"h{level}_count", 0)
        self.internal_links_count = 0
        self.external_links_count = 0
        self.broken_links_count = 0
        self.has_login_form = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class AnalysisResult:
    title: str = ""
    html_version: str = "HTML5"
    headings: HeadingCounts = field(default_factory=HeadingCounts)
    internal_links_count: int = 0
    external_links_count: int = 0
    has_login_form: bool = False
    broken_links: List[BrokenLink] = field(default_factory=list)

    @property
    def broken_links_count(self) -> int:
        return len(self.broken_links)


@dataclass
class URLFilter:
    search: str = ""
    status: Optional[URLStatus] = None
    title: str = ""
    html_version: str = ""
    has_login_form: Optional[bool] = None
    min_internal_links: Optional[int] = None
    max_internal_links: Optional[int] = None
    min_external_links: Optional[int] = None
    max_external_links: Optional[int] = None
    min_broken_links: Optional[int] = None
    max_broken_links: Optional[int] = None
    page: int = 1
    limit: int = 10
    sort_by: str = ""
    sort_direction: str = "asc"


@dataclass
class StatusUpdate:
    url_id: int
    status: str
    data: Any = None
    type: str = "status_update"
    timestamp: datetime = field(default_factory=utc_now)
