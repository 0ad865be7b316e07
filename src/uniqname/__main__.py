"""Maintenance entry point.

Usage:
    python -m uniqname stats
    python -m uniqname reinitialize
    python -m uniqname allocate "John Doe"
    python -m uniqname suggest johndoe -n 5
    python -m uniqname check johndoe
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from uniqname.config import get_settings
from uniqname.logging import setup_logging
from uniqname.service import UsernameService, username_service


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="uniqname", description="Username cache maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Print cache state and statistics")
    rebuild = sub.add_parser("reinitialize", help="Rebuild the cache from the database")
    rebuild.add_argument(
        "--from-snapshot",
        action="store_true",
        help="Rerun the startup sequence instead of forcing a database rebuild",
    )

    allocate = sub.add_parser("allocate", help="Allocate a unique username from a base string")
    allocate.add_argument("base")
    allocate.add_argument("--retries", type=int, default=None)

    suggest = sub.add_parser("suggest", help="Suggest available usernames")
    suggest.add_argument("base")
    suggest.add_argument("-n", "--count", type=int, default=None)

    check = sub.add_parser("check", help="Check whether a username is available")
    check.add_argument("username")

    return parser.parse_args(argv)


async def run(args: argparse.Namespace, service: UsernameService) -> object:
    if args.command == "reinitialize":
        await service.guard.reinitialize(rebuild=not args.from_snapshot)
        return service.guard.stats()
    if args.command == "allocate":
        if args.retries is None:
            return {"username": await service.allocate(args.base)}
        return {"username": await service.allocator.allocate_unique(args.base, args.retries)}
    if args.command == "suggest":
        if args.count is None:
            return {"suggestions": await service.suggest(args.base)}
        return {"suggestions": await service.allocator.generate_suggestions(args.base, args.count)}
    if args.command == "check":
        result = await service.check(args.username)
        return {
            "username": result.username,
            "is_available": result.is_available,
            "suggestions": result.suggestions,
        }
    return service.guard.stats()


async def amain(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings)

    # reinitialize performs the only build.
    async with username_service(settings, warm=args.command != "reinitialize") as service:
        result = await run(args, service)

    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


def main() -> None:
    sys.exit(asyncio.run(amain()))


if __name__ == "__main__":
    main()
