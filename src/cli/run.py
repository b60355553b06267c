import argparse
import asyncio
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
import json
import logging
import sys
import time
from typing import Any, Dict, List, Optional

from core.entities import Item
from core.errors import SynthesisEngineError, ValidationError
from services.config import load_config
from services.logging import setup_logging
from workflows.pipeline_factory import Services, create_services_from_config
from workflows.streaming import with_heartbeat

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items() if k != "embedding"}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if hasattr(value, "value") and hasattr(value, "name"):  # Enum
        return value.value
    return value


def _print(value: Any, compact: bool = False) -> None:
    print(json.dumps(_jsonable(value), ensure_ascii=False, indent=None if compact else 2))


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date: {value} (expected YYYY-MM-DD)") from e


def _load_items(path: str) -> List[Item]:
    with open(path, "r", encoding="utf-8") as file:
        rows = json.load(file)
    if not isinstance(rows, list):
        raise ValidationError(f"{path} must contain a JSON list of items")

    items = []
    for row in rows:
        try:
            items.append(
                Item(
                    id=str(row["id"]),
                    title=row.get("title") or "",
                    content=row.get("content") or "",
                    source_identifier=row.get("source_identifier") or "unknown",
                    source_url=row.get("source_url"),
                    collected_at=datetime.fromisoformat(row["collected_at"]),
                    newsletter_date=date.fromisoformat(row["newsletter_date"]),
                    embedding=row.get("embedding"),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid item in {path}: {e}", item=row.get("id")) from e
    return items


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="synthesis-engine",
        description="Cross-temporal synthesis and diversity-constrained selection",
    )
    parser.add_argument("--config", help="Path to config.yml (default: resources/config.yml)")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create database tables")
    commands.add_parser("health", help="Check the text model service")

    p = commands.add_parser("import-items", help="Import source items from a JSON list")
    p.add_argument("path")

    p = commands.add_parser("add-digest", help="Create a digest anchor")
    p.add_argument("--date", type=_parse_date, default=date.today())
    p.add_argument("--id", dest="digest_id")
    p.add_argument("--items", nargs="*", default=[], help="Explicit item ids (default: all items of the date)")

    p = commands.add_parser("backfill", help="Embed items that have no embedding")
    p.add_argument("--batch-size", type=int)
    p.add_argument("--max-batches", type=int)

    p = commands.add_parser("synthesize", help="Run the synthesis pipeline for a digest")
    p.add_argument("digest_id")
    p.add_argument("--max-items", type=int)
    p.add_argument("--max-candidates", type=int)
    p.add_argument("--min-similarity", type=float)
    p.add_argument("--max-age-days", type=int)
    p.add_argument("--stream", action="store_true", help="Print progress events as JSON lines")

    p = commands.add_parser("syntheses", help="List developed syntheses of a digest")
    p.add_argument("digest_id")

    queue = commands.add_parser("queue", help="Selection queue operations")
    actions = queue.add_subparsers(dest="action", required=True)
    actions.add_parser("stats")
    actions.add_parser("distribution")
    actions.add_parser("selectable")
    actions.add_parser("selected")
    actions.add_parser("expire")

    p = actions.add_parser("balanced")
    p.add_argument("--max-items", type=int)
    p.add_argument("--cap-fraction", type=float)

    p = actions.add_parser("enqueue-repo")
    p.add_argument("item_ids", nargs="+")
    p.add_argument("--priority", type=float)

    p = actions.add_parser("enqueue-candidates")
    p.add_argument("digest_id")
    p.add_argument("--priority", type=float)

    p = actions.add_parser("select")
    p.add_argument("item_ids", nargs="+", type=int)

    p = actions.add_parser("use")
    p.add_argument("post_id")
    p.add_argument("item_ids", nargs="+", type=int)

    p = actions.add_parser("skip")
    p.add_argument("item_ids", nargs="+", type=int)
    p.add_argument("--reason", default="")

    p = actions.add_parser("update-scores")
    p.add_argument("item_id", type=int)
    p.add_argument("--synthesis", type=float)
    p.add_argument("--relevance", type=float)
    p.add_argument("--uniqueness", type=float)

    p = actions.add_parser("by-source")
    p.add_argument("source_identifier")

    return parser


def _pipeline_options(args: argparse.Namespace, services: Services) -> Dict[str, Any]:
    overrides = {
        "max_items_to_process": args.max_items,
        "max_candidates_per_item": args.max_candidates,
        "min_similarity": args.min_similarity,
        "max_age_days": args.max_age_days,
    }
    defaults = services.pipeline.default_options().model_dump()
    defaults.update({k: v for k, v in overrides.items() if v is not None})
    return defaults


async def _synthesize(args: argparse.Namespace, services: Services) -> int:
    options = _pipeline_options(args, services)

    if not args.stream:
        result = await services.pipeline.run(args.digest_id, options)
        _print(result.to_dict())
        return 0

    events = services.pipeline.run_with_progress(args.digest_id, options)
    exit_code = 0
    async for event in with_heartbeat(events, services.config.synthesis.heartbeat_seconds):
        _print(event.to_dict(), compact=True)
        sys.stdout.flush()
        if event.type == "error":
            exit_code = 1
    return exit_code


async def _queue(args: argparse.Namespace, services: Services) -> int:
    queue = services.queue
    action = args.action

    if action == "stats":
        _print(await queue.queue_stats())
    elif action == "distribution":
        _print(await queue.source_distribution())
    elif action == "selectable":
        _print(await queue.selectable_items())
    elif action == "selected":
        _print(await queue.selected_items())
    elif action == "balanced":
        _print(await queue.balanced_selection(args.max_items, args.cap_fraction))
    elif action == "enqueue-repo":
        _print(await queue.enqueue_from_repository(args.item_ids, priority=args.priority))
    elif action == "enqueue-candidates":
        await services.repository.get_digest(args.digest_id)
        candidates = await services.synthesis_store.get_candidates(args.digest_id)
        _print(await queue.enqueue_from_candidates(candidates, priority=args.priority))
    elif action == "select":
        _print(await queue.select_for_article(args.item_ids))
    elif action == "use":
        _print(await queue.mark_used(args.item_ids, args.post_id))
    elif action == "skip":
        _print(await queue.skip(args.item_ids, args.reason))
    elif action == "expire":
        _print(await queue.expire_stale())
    elif action == "update-scores":
        scores = {
            "synthesis_score": args.synthesis,
            "relevance_score": args.relevance,
            "uniqueness_score": args.uniqueness,
        }
        _print(await queue.update_scores(args.item_id, scores))
    elif action == "by-source":
        _print(await queue.items_by_source(args.source_identifier))
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    start_time = time.perf_counter()
    args = build_parser().parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.LOG_LEVEL)

    # ----------------------------
    # Initialize shared services
    # ----------------------------
    services = create_services_from_config(config)

    try:
        if args.command == "init-db":
            await services.db.init_tables()
            _print({"initialized": config.DATABASE_PATH})
            return 0

        await services.db.init_tables()

        if args.command == "health":
            healthy = await services.llm.health_check()
            _print({"healthy": healthy, "base_url": config.OLLAMA_BASE_URL})
            return 0 if healthy else 1

        if args.command == "import-items":
            inserted = await services.repository.import_items(_load_items(args.path))
            _print({"inserted": inserted})
            return 0

        if args.command == "add-digest":
            digest = await services.repository.create_digest(
                args.date, sources_used=args.items, digest_id=args.digest_id
            )
            _print(digest)
            return 0

        if args.command == "backfill":
            result = await services.embedding_store.backfill(
                batch_size=args.batch_size or config.embedding.batch_size,
                max_batches=args.max_batches if args.max_batches is not None else config.embedding.max_batches,
            )
            _print(result)
            return 0

        if args.command == "synthesize":
            return await _synthesize(args, services)

        if args.command == "syntheses":
            _print(await services.pipeline.get_syntheses(args.digest_id))
            return 0

        if args.command == "queue":
            return await _queue(args, services)

    except SynthesisEngineError as e:
        logger.error(f"{args.command} failed: {e.message}")
        _print(e.to_payload())
        return 1

    finally:
        end_time = time.perf_counter()
        logger.info(f"Total time: {end_time - start_time}")

    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
