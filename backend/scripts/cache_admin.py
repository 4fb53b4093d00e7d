import argparse
import json

from loguru import logger

from app.core.config import get_settings
from app.db import SessionLocal, init_db
from app.services.cache_service import ALL_KEYS, LocalCache


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect or clear the local discovery cache")
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("status", help="Print cache freshness and the stored record counts")

    clear = subcommands.add_parser("clear", help="Delete cached entries")
    clear.add_argument(
        "--key",
        action="append",
        choices=ALL_KEYS,
        default=None,
        help="Delete only this key (repeatable); all keys by default",
    )
    return parser.parse_args(argv)


def build_status(cache: LocalCache) -> dict[str, object]:
    status = cache.status(is_showing_cached=False, is_refreshing=False)
    last_updated = status["last_updated"]
    return {
        "has_cached_data": status["has_cached_data"],
        "last_updated": last_updated.isoformat() if last_updated else None,
        "cache_age": status["cache_age"],
        "claims": len(cache.load_claims()),
        "transfers": len(cache.load_transfers()),
        "completed_transfers": len(cache.load_completed()),
        "settings": cache.load_settings(),
        "keys": cache.stored_keys(),
    }


def main(argv=None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    init_db()
    cache = LocalCache(SessionLocal, refresh_window_seconds=settings.claim_refresh_window_seconds)

    if args.command == "status":
        print(json.dumps(build_status(cache), indent=2, sort_keys=True))
        return

    removed = cache.clear(args.key)
    logger.info("Removed {} cache entries", removed)
    print(json.dumps({"removed": removed}))


if __name__ == "__main__":
    main()
