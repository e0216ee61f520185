#!/usr/bin/env python3
"""Run the one-time local-to-cloud migration for one identity.

Copies the legacy entries of a JSON local cache file into the Supabase
table under the given subject, then records the migration sentinel.
A subject whose sentinel is already set is skipped.

Usage
-----
Set environment variables and run::

    export SUPABASE_URL="https://abc.supabase.co"
    export SUPABASE_ANON_KEY="..."
    export SUPABASE_ACCESS_TOKEN="<user jwt>"
    python scripts/migrate_local_cache.py --subject "auth0|123" --cache ~/.cache/app/cache.json

Options::

    --subject SUB        Identity to migrate for (required)
    --cache FILE         Local cache file (default: CLOUDSYNC_LOCAL_CACHE_PATH)
    --keys a,b,c         Logical keys to copy (default: CLOUDSYNC_MIGRATION_KEYS)
    --remote-sentinel    Keep the sentinel in the remote store
    --dry-run            Only list what would be copied
    --json               Output as machine-readable JSON
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pycloudsync import (  # noqa: E402
    CloudStorageClient,
    CloudSyncConfig,
    CloudSyncError,
    FileLocalCache,
    Identity,
    SentinelLocation,
)


def _dry_run(cache: FileLocalCache, keys: tuple[str, ...]) -> dict[str, Any]:
    present = {key: len(value) for key in keys if (value := cache.get(key))}
    return {
        "would_migrate": sorted(present),
        "bytes": present,
        "empty": [key for key in keys if key not in present],
    }


async def main() -> int:
    parser = argparse.ArgumentParser(
        description="Copy legacy local cache entries into the remote store, once per identity.",
    )
    parser.add_argument("--subject", required=True, help="Identity subject to migrate for")
    parser.add_argument("--cache", help="Local cache JSON file (default: CLOUDSYNC_LOCAL_CACHE_PATH)")
    parser.add_argument("--keys", help="Comma separated logical keys (default: CLOUDSYNC_MIGRATION_KEYS)")
    parser.add_argument("--remote-sentinel", action="store_true", help="Store the sentinel remotely")
    parser.add_argument("--dry-run", action="store_true", help="Only list what would be copied")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    overrides: dict[str, Any] = {"auto_migrate": False, "realtime_enabled": False}
    if args.cache:
        overrides["local_cache_path"] = args.cache
    if args.keys:
        overrides["migration_keys"] = tuple(k.strip() for k in args.keys.split(",") if k.strip())
    if args.remote_sentinel:
        overrides["sentinel_location"] = SentinelLocation.REMOTE

    try:
        config = CloudSyncConfig.from_env(**overrides)
    except CloudSyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    if not config.local_cache_path:
        print("error: no local cache file; pass --cache or set CLOUDSYNC_LOCAL_CACHE_PATH", file=sys.stderr)
        return 2

    cache = FileLocalCache(config.local_cache_path)

    if args.dry_run:
        result: dict[str, Any] = {
            "subject": args.subject,
            "cache": str(cache.path),
            **_dry_run(cache, config.migration_keys),
        }
    else:
        async with CloudStorageClient(config, local=cache) as client:
            report = await client.run_migration_once(Identity(subject=args.subject))
        result = {"cache": str(cache.path), **dataclasses.asdict(report)}

    if args.json_mode:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        for key, value in result.items():
            print(f"  {key:<14}: {value}")
    return 1 if result.get("failed") else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
