from __future__ import annotations
import os
import random
from dataclasses import dataclass

DATA_DIR = os.getenv("SITEPROBE_DATA", os.path.abspath("./data"))

@dataclass
class HttpConfig:
    user_agent: str = os.getenv("SITEPROBE_UA", "SiteProbe/1.0 (+https://github.com/siteprobe/siteprobe)")
    timeout: float = float(os.getenv("SITEPROBE_TIMEOUT", "30"))
    max_redirects: int = int(os.getenv("SITEPROBE_MAX_REDIRECTS", "5"))
    max_response_size: int = int(os.getenv("SITEPROBE_MAX_RESPONSE_SIZE", str(10 * 1024 * 1024)))
    enable_http2: bool = os.getenv("SITEPROBE_HTTP2", "1") == "1"
    # Link liveness probing
    head_timeout: float = float(os.getenv("SITEPROBE_HEAD_TIMEOUT", "5"))
    get_timeout: float = float(os.getenv("SITEPROBE_GET_TIMEOUT", "3"))
    probe_concurrency: int = int(os.getenv("SITEPROBE_PROBE_CONCURRENCY", "10"))

    def __post_init__(self):
        self.user_agent = self.user_agent or USER_AGENTS["default"]
        self.probe_concurrency = max(1, self.probe_concurrency)

@dataclass
class PoolConfig:
    workers: int = int(os.getenv("SITEPROBE_WORKERS", "10"))
    queue_size: int = int(os.getenv("SITEPROBE_QUEUE_SIZE", "100"))
    job_timeout: float = float(os.getenv("SITEPROBE_JOB_TIMEOUT", "30"))
    retry_delay: float = float(os.getenv("SITEPROBE_RETRY_DELAY", "1.0"))  # linear: retry * delay

@dataclass
class CrawlerConfig:
    retry_attempts: int = int(os.getenv("SITEPROBE_RETRY_ATTEMPTS", "3"))
    # Kept below PoolConfig.job_timeout so a slow page is persisted as an error
    analysis_timeout: float = float(os.getenv("SITEPROBE_ANALYSIS_TIMEOUT", "25"))
    db_timeout: float = float(os.getenv("SITEPROBE_DB_TIMEOUT", "5"))
    db_list_timeout: float = float(os.getenv("SITEPROBE_DB_LIST_TIMEOUT", "10"))
    max_page_size: int = 100

def get_db_path(name: str = "siteprobe.db") -> str:
    """Return the SQLite database path under DATA_DIR, creating the directory."""
    os.makedirs(DATA_DIR, exist_ok=True)
    return os.path.join(DATA_DIR, name)

# User agent strings for different scenarios
USER_AGENTS = {
    "default": "SiteProbe/1.0 (+https://github.com/siteprobe/siteprobe)",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "firefox": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "safari": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
}

def get_user_agent(ua_type: str = "default") -> str:
    """Get a user agent string by type or return a random one if 'random' is specified."""
    if ua_type == "random":
        return random.choice(list(USER_AGENTS.values()))
    return USER_AGENTS.get(ua_type, USER_AGENTS["default"])
