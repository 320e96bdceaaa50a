from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from core.blob_store import build_blob_store
from core.categories import CATEGORIES, get_category
from core.config import Settings
from core.errors import ArchiveError
from core.index import MetadataIndex
from core.queue import build_queue
from core.schema import init_database
from services.backfill import BackfillTrigger
from services.enrichment import EnvironmentEnricher
from services.ingest import IngestionPipeline


def _print_err(msg: str) -> None:
    sys.stderr.write(msg + "\n")


def _load_json_file(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    return json.loads(Path(path).read_text(encoding="utf-8"))


async def put_item(settings: Settings, category: str, data: Any) -> dict[str, Any]:
    index = await MetadataIndex.connect(settings.database_url, max_size=2)
    try:
        queue = build_queue(settings)
        await queue.ensure_ready()
        pipeline = IngestionPipeline(
            blob_store=build_blob_store(settings),
            index=index,
            queue=queue,
            enricher=EnvironmentEnricher(
                settings.enrichment_endpoints,
                api_key=settings.enrichment_api_key,
                place_details_url=settings.place_details_url,
            ),
        )
        result = await pipeline.submit(category, data)
        return result.to_dict()
    finally:
        await index.close()


async def reindex(settings: Settings, category: str | None, *, truncate: bool = False) -> int:
    """Queue every stored envelope (optionally one category) for indexing."""
    if truncate:
        index = await MetadataIndex.connect(settings.database_url, max_size=2)
        try:
            await index.truncate(category)
        finally:
            await index.close()
    queue = build_queue(settings)
    await queue.ensure_ready()
    trigger = BackfillTrigger(blob_store=build_blob_store(settings), queue=queue)
    if category:
        return await trigger.run_category(category)
    return await trigger.run("")


async def status_payload(settings: Settings) -> dict[str, Any]:
    index = await MetadataIndex.connect(settings.database_url, max_size=2)
    try:
        counts = await index.counts()
    finally:
        await index.close()
    return {
        "counts": counts,
        "total": sum(counts.values()),
        "settings": settings.redacted(),
    }


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="archivist", description="Manage the Archivist content archive")
    sub = p.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init-db", help="Apply the metadata index schema")
    init.add_argument("--dsn", default=None, help="Postgres DSN (default: from env)")
    init.add_argument("--create", action="store_true", help="Create the database if it does not exist")
    init.set_defaults(func="init_db")

    put = sub.add_parser("put", help="Store one item from a JSON file ('-' for stdin)")
    put.add_argument("category", choices=sorted(CATEGORIES))
    put.add_argument("file")
    put.set_defaults(func="put")

    ri = sub.add_parser("reindex", help="Queue stored envelopes for re-indexing")
    scope = ri.add_mutually_exclusive_group(required=True)
    scope.add_argument("--category", choices=sorted(CATEGORIES))
    scope.add_argument("--all", action="store_true", help="Every category")
    ri.add_argument("--truncate", action="store_true", help="Empty the index tables first")
    ri.set_defaults(func="reindex")

    st = sub.add_parser("status", help="Show index row counts and effective configuration")
    st.add_argument("--json", action="store_true", help="Output JSON")
    st.set_defaults(func="status")

    return p


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        if args.func == "init_db":
            applied = asyncio.run(init_database(args.dsn or settings.database_url, create=args.create))
            sys.stdout.write(f"Applied {applied} schema files\n")
            return 0
        if args.func == "put":
            try:
                data = _load_json_file(args.file)
            except (OSError, json.JSONDecodeError) as e:
                _print_err(f"Could not read {args.file}: {e}")
                return 1
            get_category(args.category)
            result = asyncio.run(put_item(settings, args.category, data))
            sys.stdout.write(json.dumps(result, indent=2) + "\n")
            return 0
        if args.func == "reindex":
            count = asyncio.run(reindex(settings, args.category, truncate=args.truncate))
            sys.stdout.write(f"Queued {count} objects for indexing\n")
            return 0
        if args.func == "status":
            payload = asyncio.run(status_payload(settings))
            if args.json:
                sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")
            else:
                lines = [f"{name}: {n}" for name, n in sorted(payload["counts"].items())]
                lines.append(f"total: {payload['total']}")
                sys.stdout.write("\n".join(lines) + "\n")
            return 0
    except ArchiveError as e:
        _print_err(f"{e.kind}: {e.message}")
        return 1

    _print_err("Unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
