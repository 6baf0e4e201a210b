#!/usr/bin/env python3
"""
Operational helper for a cache namespace.

Evicts keys, tag groups or a whole namespace, inspects distributed locks and
resets rate-limit windows against the same backend the services use. Meant
for manual runs from a workstation or an incident runbook.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

from cache_engine.backend import create_backend
from cache_engine.invalidation import InvalidationManager
from cache_engine.locking import LockManager
from cache_engine.ratelimit import FixedWindowRateLimiter
from cache_engine.shared.config import CacheSettings, get_settings
from cache_engine.shared.logging import configure_logging
from cache_engine.store import EntryStore


async def run(args: argparse.Namespace, settings: CacheSettings) -> Dict[str, Any]:
    """Execute one sub-command and return its summary."""
    backend = create_backend(settings)
    try:
        await backend.start()
        store = EntryStore(backend, settings.namespace)
        invalidation = InvalidationManager(
            store,
            channel=settings.invalidation_channel,
            broadcast=args.broadcast,
        )

        if args.command == "evict":
            removed = await invalidation.evict_many(args.keys)
            return {"command": "evict", "removed": removed}
        if args.command == "evict-tag":
            removed = await invalidation.evict_all(args.tag)
            return {"command": "evict-tag", "tag": args.tag, "removed": removed}
        if args.command == "evict-matching":
            removed = await invalidation.evict_matching(args.pattern)
            return {"command": "evict-matching", "pattern": args.pattern, "removed": removed}
        if args.command == "clear":
            if not args.yes:
                raise SystemExit("[cache-admin] refusing to clear without --yes")
            removed = await invalidation.clear_namespace()
            return {"command": "clear", "namespace": settings.namespace, "removed": removed}
        if args.command == "prune-indexes":
            pruned = await store.prune_indexes()
            return {"command": "prune-indexes", "namespace": settings.namespace, "pruned": pruned}
        if args.command == "lock-status":
            locks = LockManager(backend, settings.namespace)
            key = locks.lock_key(args.name)
            return {
                "command": "lock-status",
                "lock": args.name,
                "locked": await locks.is_locked(args.name),
                "ttl_seconds": await backend.ttl(key),
            }
        if args.command == "rate-reset":
            limiter = FixedWindowRateLimiter(backend, settings.namespace)
            reset = await limiter.reset(args.subject, args.window)
            return {"command": "rate-reset", "subject": args.subject, "reset": reset}
        raise ValueError(f"Unknown command {args.command}")
    finally:
        await backend.close()


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and invalidate a cache namespace.")
    parser.add_argument("--redis-url", help="Backend connection URL (default: CACHE_REDIS_URL)")
    parser.add_argument("--namespace", help="Cache namespace (default: CACHE_NAMESPACE)")
    parser.add_argument("--broadcast", action="store_true", help="Publish invalidation events to peers")
    parser.add_argument("--log-level", help="Log level (default: CACHE_LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", required=True)

    evict = sub.add_parser("evict", help="Evict one or more keys")
    evict.add_argument("keys", nargs="+", help="Logical cache keys, e.g. product:42")

    evict_tag = sub.add_parser("evict-tag", help="Evict every entry written with a tag")
    evict_tag.add_argument("tag")

    evict_matching = sub.add_parser("evict-matching", help="Evict keys matching a glob pattern")
    evict_matching.add_argument("pattern")

    clear = sub.add_parser("clear", help="Evict the whole namespace")
    clear.add_argument("--yes", action="store_true", help="Confirm namespace clear")

    sub.add_parser("prune-indexes", help="Drop index members of expired entries")

    lock_status = sub.add_parser("lock-status", help="Show whether a lock is held")
    lock_status.add_argument("name")

    rate_reset = sub.add_parser("rate-reset", help="Reset the current rate-limit window of a subject")
    rate_reset.add_argument("subject")
    rate_reset.add_argument("--window", type=float, required=True, help="Window length in seconds")

    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = _parse_args(argv)
    overrides = {
        name: value
        for name, value in (("redis_url", args.redis_url), ("namespace", args.namespace), ("log_level", args.log_level))
        if value is not None
    }
    settings = get_settings(**overrides)
    configure_logging("cache-admin", settings.log_level)
    try:
        summary = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-admin] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
