"""
Persistence gateway for URL and broken-link records.

`URLRepository` is the narrow interface the service depends on;
`SQLiteURLRepository` implements it on aiosqlite. Every call is bounded by a
timeout and storage failures surface as PersistenceError.
"""
from __future__ import annotations
import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import PersistenceError, RecordNotFound
from .models import BrokenLink, URLFilter, URLRecord, URLStatus, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
LIST_TIMEOUT = 10.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS urls(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    url_hash TEXT NOT NULL UNIQUE,
    title TEXT,
    html_version TEXT,
    h1_count INTEGER NOT NULL DEFAULT 0,
    h2_count INTEGER NOT NULL DEFAULT 0,
    h3_count INTEGER NOT NULL DEFAULT 0,
    h4_count INTEGER NOT NULL DEFAULT 0,
    h5_count INTEGER NOT NULL DEFAULT 0,
    h6_count INTEGER NOT NULL DEFAULT 0,
    internal_links_count INTEGER NOT NULL DEFAULT 0,
    external_links_count INTEGER NOT NULL DEFAULT 0,
    broken_links_count INTEGER NOT NULL DEFAULT 0,
    has_login_form INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'queued',
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_urls_status ON urls(status);
CREATE INDEX IF NOT EXISTS idx_urls_created_at ON urls(created_at);

CREATE TABLE IF NOT EXISTS broken_links(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url_id INTEGER NOT NULL REFERENCES urls(id) ON DELETE CASCADE,
    link_url TEXT NOT NULL,
    status_code INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_broken_links_url_id ON broken_links(url_id);
"""

URL_COLUMNS = (
    "id, url, url_hash, title, html_version, h1_count, h2_count, h3_count, h4_count, h5_count, h6_count, "
    "internal_links_count, external_links_count, broken_links_count, has_login_form, status, "
    "error_message, created_at, updated_at"
)

SORTABLE_COLUMNS = {
    "title", "url", "html_version", "internal_links_count", "external_links_count",
    "broken_links_count", "has_login_form", "status", "created_at", "updated_at",
}


class DuplicateRecord(PersistenceError):
    """A record with the same fingerprint already exists."""
    pass


class URLRepository(ABC):
    """Storage operations the crawler service relies on."""

    @abstractmethod
    async def save(self, record: URLRecord, timeout: Optional[float] = None) -> int:
        pass

    @abstractmethod
    async def find_by_id(self, url_id: int, timeout: Optional[float] = None) -> URLRecord:
        pass

    @abstractmethod
    async def find_by_hash(self, url_hash: str, timeout: Optional[float] = None) -> Optional[URLRecord]:
        pass

    @abstractmethod
    async def find_all(self, filter: URLFilter, timeout: Optional[float] = None) -> Tuple[List[URLRecord], int]:
        pass

    @abstractmethod
    async def update(self, record: URLRecord, timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, url_id: int, timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def delete_batch(self, ids: Sequence[int], timeout: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def save_broken_link(self, link: BrokenLink, timeout: Optional[float] = None) -> int:
        pass

    @abstractmethod
    async def find_broken_links_by_url_id(self, url_id: int, timeout: Optional[float] = None) -> List[BrokenLink]:
        pass

    @abstractmethod
    async def delete_broken_links_by_url_id(self, url_id: int, timeout: Optional[float] = None) -> None:
        pass


async def optimize_connection(conn: aiosqlite.Connection) -> None:
    """Apply SQLite performance optimizations."""
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA foreign_keys=ON")


def _row_to_record(row: Sequence[Any]) -> URLRecord:
    return URLRecord(
        id=row[0],
        url=row[1],
        url_hash=row[2],
        title=row[3],
        html_version=row[4],
        h1_count=row[5],
        h2_count=row[6],
        h3_count=row[7],
        h4_count=row[8],
        h5_count=row[9],
        h6_count=row[10],
        internal_links_count=row[11],
        external_links_count=row[12],
        broken_links_count=row[13],
        has_login_form=bool(row[14]),
        status=URLStatus(row[15]),
        error_message=row[16],
        created_at=datetime.fromisoformat(row[17]),
        updated_at=datetime.fromisoformat(row[18]),
    )


def _metric_values(record: URLRecord) -> Tuple:
    return (
        record.title, record.html_version,
        record.h1_count, record.h2_count, record.h3_count,
        record.h4_count, record.h5_count, record.h6_count,
        record.internal_links_count, record.external_links_count, record.broken_links_count,
        int(record.has_login_form), record.status.value, record.error_message,
    )


def build_filter_clause(filter: URLFilter) -> Tuple[str, List[Any]]:
    """Translate a URLFilter into a WHERE clause and its parameters."""
    clauses = ["1=1"]
    args: List[Any] = []

    if filter.search:
        pattern = f"%{filter.search}%"
        clauses.append("(url LIKE ? OR title LIKE ? OR html_version LIKE ?)")
        args.extend([pattern, pattern, pattern])
    if filter.status:
        clauses.append("status = ?")
        args.append(URLStatus(filter.status).value)
    if filter.title:
        clauses.append("title LIKE ?")
        args.append(f"%{filter.title}%")
    if filter.html_version:
        clauses.append("html_version LIKE ?")
        args.append(f"%{filter.html_version}%")
    if filter.has_login_form is not None:
        clauses.append("has_login_form = ?")
        args.append(int(filter.has_login_form))

    for column, low, high in (
        ("internal_links_count", filter.min_internal_links, filter.max_internal_links),
        ("external_links_count", filter.min_external_links, filter.max_external_links),
        ("broken_links_count", filter.min_broken_links, filter.max_broken_links),
    ):
        if low is not None:
            clauses.append(f"{column} >= ?")
            args.append(low)
        if high is not None:
            clauses.append(f"{column} <= ?")
            args.append(high)

    return "WHERE " + " AND ".join(clauses), args


def build_order_clause(filter: URLFilter) -> str:
    if filter.sort_by in SORTABLE_COLUMNS:
        direction = "DESC" if filter.sort_direction.lower() == "desc" else "ASC"
        return f"ORDER BY {filter.sort_by} {direction}, id {direction}"
    return "ORDER BY created_at DESC, id DESC"


class SQLiteURLRepository(URLRepository):
    """URLRepository backed by a SQLite file."""

    def __init__(self, db_path: str, default_timeout: float = DEFAULT_TIMEOUT,
                 list_timeout: float = LIST_TIMEOUT):
        self.db_path = db_path
        self.default_timeout = default_timeout
        self.list_timeout = list_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as conn:
            await optimize_connection(conn)
            yield conn

    async def _bounded(self, operation: str, coro: Awaitable[Any], timeout: Optional[float]) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=timeout or self.default_timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"{operation} timed out") from e
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(f"{operation} violated a constraint: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to {operation}: {e}") from e

    async def init(self) -> None:
        """Create tables and indexes if they do not exist."""
        async def _init():
            async with self._connect() as conn:
                await conn.executescript(SCHEMA)
                await conn.commit()

        await self._bounded("initialize schema", _init(), self.list_timeout)
        logger.info("Database ready", extra={"fields": {"path": self.db_path}})

    async def save(self, record: URLRecord, timeout: Optional[float] = None) -> int:
        async def _save():
            now = utc_now()
            async with self._connect() as conn:
                cursor = await conn.execute(
                    f"""
                    INSERT INTO urls (url, url_hash, title, html_version,
                                      h1_count, h2_count, h3_count, h4_count, h5_count, h6_count,
                                      internal_links_count, external_links_count, broken_links_count,
                                      has_login_form, status, error_message, created_at, updated_at)
                    VALUES (?, ?, {", ".join("?" * 16)})
                    """,
                    (record.url, record.url_hash, *_metric_values(record), now.isoformat(), now.isoformat()),
                )
                await conn.commit()
                record.id = cursor.lastrowid
                record.created_at = record.updated_at = now
                return record.id

        return await self._bounded("save URL", _save(), timeout)

    async def find_by_id(self, url_id: int, timeout: Optional[float] = None) -> URLRecord:
        async def _find():
            async with self._connect() as conn:
                cursor = await conn.execute(f"SELECT {URL_COLUMNS} FROM urls WHERE id = ?", (url_id,))
                return await cursor.fetchone()

        row = await self._bounded("find URL by ID", _find(), timeout)
        if row is None:
            raise RecordNotFound(f"URL not found with ID {url_id}")
        return _row_to_record(row)

    async def find_by_hash(self, url_hash: str, timeout: Optional[float] = None) -> Optional[URLRecord]:
        async def _find():
            async with self._connect() as conn:
                cursor = await conn.execute(f"SELECT {URL_COLUMNS} FROM urls WHERE url_hash = ?", (url_hash,))
                return await cursor.fetchone()

        row = await self._bounded("find URL by hash", _find(), timeout)
        return _row_to_record(row) if row else None

    async def find_all(self, filter: URLFilter, timeout: Optional[float] = None) -> Tuple[List[URLRecord], int]:
        where, args = build_filter_clause(filter)
        order = build_order_clause(filter)
        offset = (filter.page - 1) * filter.limit

        async def _find_all():
            async with self._connect() as conn:
                cursor = await conn.execute(f"SELECT COUNT(*) FROM urls {where}", args)
                total = (await cursor.fetchone())[0]
                cursor = await conn.execute(
                    f"SELECT {URL_COLUMNS} FROM urls {where} {order} LIMIT ? OFFSET ?",
                    (*args, filter.limit, offset),
                )
                rows = await cursor.fetchall()
                return [_row_to_record(r) for r in rows], total

        return await self._bounded("list URLs", _find_all(), timeout or self.list_timeout)

    async def update(self, record: URLRecord, timeout: Optional[float] = None) -> None:
        async def _update():
            now = utc_now()
            async with self._connect() as conn:
                cursor = await conn.execute(
                    """
                    UPDATE urls SET
                        title = ?, html_version = ?,
                        h1_count = ?, h2_count = ?, h3_count = ?, h4_count = ?, h5_count = ?, h6_count = ?,
                        internal_links_count = ?, external_links_count = ?, broken_links_count = ?,
                        has_login_form = ?, status = ?, error_message = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (*_metric_values(record), now.isoformat(), record.id),
                )
                await conn.commit()
                record.updated_at = now
                return cursor.rowcount

        affected = await self._bounded("update URL", _update(), timeout)
        if affected == 0:
            raise RecordNotFound(f"no URL found with ID {record.id}")

    async def delete(self, url_id: int, timeout: Optional[float] = None) -> None:
        async def _delete():
            async with self._connect() as conn:
                cursor = await conn.execute("DELETE FROM urls WHERE id = ?", (url_id,))
                await conn.commit()
                return cursor.rowcount

        affected = await self._bounded("delete URL", _delete(), timeout)
        if affected == 0:
            raise RecordNotFound(f"no URL found with ID {url_id}")

    async def delete_batch(self, ids: Sequence[int], timeout: Optional[float] = None) -> None:
        if not ids:
            return
        placeholders = ",".join("?" * len(ids))

        async def _delete():
            async with self._connect() as conn:
                cursor = await conn.execute(f"DELETE FROM urls WHERE id IN ({placeholders})", tuple(ids))
                await conn.commit()
                return cursor.rowcount

        affected = await self._bounded("delete URLs", _delete(), timeout or self.list_timeout)
        if affected == 0:
            raise RecordNotFound("no URLs found with provided IDs")

    async def save_broken_link(self, link: BrokenLink, timeout: Optional[float] = None) -> int:
        async def _save():
            async with self._connect() as conn:
                cursor = await conn.execute(
                    "INSERT INTO broken_links (url_id, link_url, status_code, error_message) VALUES (?, ?, ?, ?)",
                    (link.url_id, link.link_url, link.status_code, link.error_message),
                )
                await conn.commit()
                link.id = cursor.lastrowid
                return link.id

        return await self._bounded("save broken link", _save(), timeout)

    async def find_broken_links_by_url_id(self, url_id: int, timeout: Optional[float] = None) -> List[BrokenLink]:
        async def _find():
            async with self._connect() as conn:
                cursor = await conn.execute(
                    "SELECT id, url_id, link_url, status_code, error_message FROM broken_links "
                    "WHERE url_id = ? ORDER BY id",
                    (url_id,),
                )
                return await cursor.fetchall()

        rows = await self._bounded("find broken links", _find(), timeout)
        return [
            BrokenLink(id=r[0], url_id=r[1], link_url=r[2], status_code=r[3], error_message=r[4])
            for r in rows
        ]

    async def delete_broken_links_by_url_id(self, url_id: int, timeout: Optional[float] = None) -> None:
        async def _delete():
            async with self._connect() as conn:
                await conn.execute("DELETE FROM broken_links WHERE url_id = ?", (url_id,))
                await conn.commit()

        await self._bounded("delete broken links", _delete(), timeout)
