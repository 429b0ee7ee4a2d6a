#!/usr/bin/env python3
# python scripts/warm_cache.py queries/*.sql --backend cli
"""
Schema cache warmer (standalone).

Runs one refresh cycle outside the server:
- the given SQL files act as the open documents (they gate column fetches)
- --all-datasets fetches columns for every dataset regardless of the gate
- --clear empties the store first (forced full rebuild)

Exit code is 0 when the cycle completed without scope failures, 1 when some
scopes failed, 2 when the cycle aborted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _print_section(title: str) -> None:
    print("\n" + "=" * 72)
    print(title)
    print("=" * 72)


def _read_texts(paths: List[str]) -> List[str]:
    texts = []
    for raw in paths:
        path = Path(raw)
        try:
            texts.append(path.read_text(encoding="utf-8"))
        except OSError as exc:
            print(f"[WARN] Skipping unreadable file {path}: {exc}")
    return texts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Warm the BigQuery schema cache")
    parser.add_argument("files", nargs="*", help="SQL files whose text gates column refresh")
    parser.add_argument("--backend", choices=["api", "cli"], default=None, help="Remote backend (default: settings)")
    parser.add_argument("--cache-dir", default=None, help="Cache directory (default: settings)")
    parser.add_argument("--clear", action="store_true", help="Clear the store before refreshing")
    parser.add_argument(
        "--all-datasets",
        action="store_true",
        help="Fetch columns for every dataset, not only those named in the files",
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON only")
    return parser


async def _main_async(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    from bqls.config import settings
    from bqls.core.cache_store import CacheStore, store_path_for
    from bqls.core.directory_factory import create_remote_directory
    from bqls.core.schema_fetcher import SchemaFetcher

    backend = args.backend or settings.remote_backend
    path = store_path_for(args.cache_dir) if args.cache_dir else None
    cache = CacheStore(path)
    directory = create_remote_directory(backend)
    await cache.initialize()
    try:
        if args.clear:
            await cache.clear()

        texts = _read_texts(args.files)
        report = await SchemaFetcher(cache, directory).refresh(texts, fetch_all_columns=args.all_datasets)
    finally:
        try:
            await directory.close()
        finally:
            await cache.close()

    if args.json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        _print_section("RESULT")
        print(f"Cache: {cache.path}")
        print(f"Backend: {backend}")
        print(f"Projects: {report.projects}")
        print(f"Dataset scopes refreshed: {report.dataset_scopes_refreshed}")
        print(f"Column scopes refreshed: {report.column_scopes_refreshed}")
        print(f"Column scopes skipped: {report.column_scopes_skipped}")
        for failure in report.failures:
            print(f"[FAIL] {failure.scope}: {failure.error}")
        if report.aborted:
            print(f"[FAIL] Cycle aborted: {report.error}")

    if report.aborted:
        return 2
    return 0 if report.ok else 1


def main() -> None:
    try:
        code = asyncio.run(_main_async())
    except KeyboardInterrupt:
        code = 130
    except Exception as exc:
        print(f"[FAIL] {exc!r}")
        print(traceback.format_exc())
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
