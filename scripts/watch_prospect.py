"""
Follow a prospect's processing stream from the command line.

Usage:
    python scripts/watch_prospect.py <prospect-id> --token <jwt> [--base-url http://localhost:8000]

Exits 0 when processing completes, 1 when it fails.
"""
import argparse
import asyncio
import logging
import sys

from app.config import settings
from app.services.progress_consumer import ProspectProgressConsumer, HttpxSSETransport


def print_update(update: dict):
    print(f"[{update.get('progress', 0):>3}%] {update.get('status')}: {update.get('message')}")


async def watch(prospect_id: str, base_url: str, token: str) -> int:
    consumer = ProspectProgressConsumer(
        prospect_id,
        transport=HttpxSSETransport(base_url, token=token),
        on_update=print_update,
        project_url_template=f"{base_url.rstrip('/')}/api/projects/{{slug}}",
    )
    outcome = await consumer.run()

    if outcome.success:
        print(f"✅ {outcome.message}" + (f": {outcome.project_url}" if outcome.project_url else ""))
        return 0

    print(f"❌ {outcome.message}")
    return 1


def main():
    parser = argparse.ArgumentParser(description="Follow prospect processing progress")
    parser.add_argument("prospect_id")
    parser.add_argument("--base-url", default=settings.PUBLIC_BASE_URL)
    parser.add_argument("--token", required=True, help="JWT from /api/auth/login")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    sys.exit(asyncio.run(watch(args.prospect_id, args.base_url, args.token)))


if __name__ == "__main__":
    main()
