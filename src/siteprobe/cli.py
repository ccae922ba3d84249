import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from .analyzer import PageAnalyzer
from .config import CrawlerConfig, HttpConfig, PoolConfig, get_db_path, get_user_agent
from .errors import SiteProbeError
from .logging_config import setup_logging
from .models import URLFilter, URLStatus
from .pool import WorkerPool
from .repository import SQLiteURLRepository
from .service import CrawlerService


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="siteprobe",
        description="Analyze web pages: structure, login forms and broken outbound links",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s analyze https://example.com
  %(prog)s analyze https://example.com https://example.org --workers 4
  %(prog)s list --status error
  %(prog)s broken 3
        """
    )

    # Storage and logging
    p.add_argument("--db", type=str, default=None,
                   help="SQLite database path (default: $SITEPROBE_DATA/siteprobe.db)")
    p.add_argument("--log-level", type=str, default=None,
                   help="Log level (default: $SITEPROBE_LOG_LEVEL or INFO)")

    # Worker pool
    p.add_argument("--workers", type=int, default=None,
                   help="Number of concurrent analysis workers (default: 10)")
    p.add_argument("--queue-size", type=int, default=None,
                   help="Maximum number of pending jobs (default: 100)")
    p.add_argument("--max-retries", type=int, default=None,
                   help="Retries for pages that fail to fetch (default: 3)")

    # HTTP configuration
    p.add_argument("--timeout", type=float, default=None,
                   help="Page request timeout in seconds (default: 30)")
    p.add_argument("--user-agent", choices=["default", "chrome", "firefox", "safari", "random"],
                   default="default", help="User agent type to use (default: default)")
    p.add_argument("--custom-ua", type=str,
                   help="Custom user agent string (overrides --user-agent)")

    sub = p.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Register URLs without analyzing them")
    add.add_argument("urls", nargs="+")

    analyze = sub.add_parser("analyze", help="Register and analyze URLs, then print the results")
    analyze.add_argument("urls", nargs="+")

    lst = sub.add_parser("list", help="List stored URLs")
    lst.add_argument("--search", type=str, default="")
    lst.add_argument("--status", choices=[s.value for s in URLStatus], default=None)
    lst.add_argument("--page", type=int, default=1)
    lst.add_argument("--limit", type=int, default=10)
    lst.add_argument("--sort-by", type=str, default="")
    lst.add_argument("--desc", action="store_true", help="Sort descending")

    broken = sub.add_parser("broken", help="Show the broken links of a URL")
    broken.add_argument("id", type=int)

    delete = sub.add_parser("delete", help="Delete URLs and their broken links")
    delete.add_argument("ids", type=int, nargs="+")

    return p


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run(args: argparse.Namespace) -> int:
    http_config = HttpConfig(user_agent=args.custom_ua or get_user_agent(args.user_agent))
    if args.timeout is not None:
        http_config.timeout = args.timeout

    pool_config = PoolConfig()
    if args.workers is not None:
        pool_config.workers = args.workers
    if args.queue_size is not None:
        pool_config.queue_size = args.queue_size

    crawler_config = CrawlerConfig()
    if args.max_retries is not None:
        crawler_config.retry_attempts = args.max_retries

    repository = SQLiteURLRepository(args.db or get_db_path(), crawler_config.db_timeout,
                                     crawler_config.db_list_timeout)
    await repository.init()

    pool = WorkerPool(
        worker_count=pool_config.workers,
        queue_size=pool_config.queue_size,
        job_timeout=pool_config.job_timeout,
        retry_interval=pool_config.retry_delay,
    )
    service = CrawlerService(repository, pool, PageAnalyzer(http_config), crawler_config)

    if args.command == "add":
        for url in args.urls:
            _print_json((await service.add_url(url)).to_dict())
        return 0

    if args.command == "analyze":
        async with pool:
            records = [await service.add_url(url) for url in args.urls]
            for record in records:
                await service.analyze_url(record.id)
            await pool.join()

        failed = 0
        for record in records:
            record = await service.get_url(record.id)
            output = record.to_dict()
            output["broken_links"] = [asdict(link) for link in await service.get_broken_links(record.id)]
            _print_json(output)
            failed += record.status != URLStatus.COMPLETED
        return 1 if failed else 0

    if args.command == "list":
        records, total = await service.get_urls(URLFilter(
            search=args.search,
            status=URLStatus(args.status) if args.status else None,
            page=args.page,
            limit=args.limit,
            sort_by=args.sort_by,
            sort_direction="desc" if args.desc else "asc",
        ))
        _print_json({"total": total, "page": args.page, "data": [r.to_dict() for r in records]})
        return 0

    if args.command == "broken":
        _print_json([asdict(link) for link in await service.get_broken_links(args.id)])
        return 0

    if args.command == "delete":
        await service.delete_urls(args.ids)
        return 0

    return 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except SiteProbeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
