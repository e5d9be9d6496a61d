"""
Command-line interface for context-for-clankers.

Sub-commands
------------
store    – Store a piece of text as a memory.
search   – Similarity search over stored memories.
context  – Assemble token-bounded context for a query.
explain  – Show the contextual score breakdown for a query.
list     – List stored memories.
delete   – Delete a memory by its ID.
count    – Print the number of stored memories.
stats    – Print store, cache, compression and search statistics.
compress – Compress stored memories once thresholds are crossed.
index    – Index workspace files into line-ranged chunks.
touch    – Record that a file was just modified.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .config import Settings
from .errors import ContextEngineError
from .logging_setup import configure_logging
from .memory import MemoryManager
from .models import CompressionLevel, MemoryType, MetadataFilters, SearchOptions


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="context-for-clankers",
        description="Workspace-aware context retrieval and compression for LLM sessions.",
    )
    parser.add_argument(
        "--data",
        default=None,
        metavar="PATH",
        help="Directory for persisted indexes (default: $CONTEXT_FOR_CLANKERS_DATA_PATH or ~/.cache/context-for-clankers).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Logging level written to stderr (default: WARNING).",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # store
    p_store = sub.add_parser("store", help="Store text as a memory.")
    p_store.add_argument("text", nargs="?", help="Text to store (reads stdin if omitted).")
    p_store.add_argument(
        "--type",
        default=MemoryType.NOTE.value,
        choices=[t.value for t in MemoryType],
        help="Memory type (default: note).",
    )
    p_store.add_argument("--tags", default="", help="Comma-separated tags.")
    p_store.add_argument("--project", default=None, help="Project the memory belongs to.")
    p_store.add_argument("--language", default=None, help="Programming language of the content.")
    p_store.add_argument("--source", default="user", help="Originating file path or provenance tag.")

    # search
    p_search = sub.add_parser("search", help="Similarity search over memories.")
    p_search.add_argument("query", help="Natural-language query.")
    p_search.add_argument(
        "-n",
        type=int,
        default=10,
        metavar="N",
        help="Number of results to return (default: 10).",
    )
    p_search.add_argument(
        "--type",
        action="append",
        default=[],
        choices=[t.value for t in MemoryType],
        help="Only return memories of this type (repeatable).",
    )
    p_search.add_argument("--tag", action="append", default=[], help="Only return memories with this tag (repeatable).")
    p_search.add_argument(
        "--sort",
        default="similarity",
        choices=["similarity", "date", "importance"],
        help="Result ordering (default: similarity).",
    )
    p_search.add_argument("--json", action="store_true", dest="as_json", help="Output results as JSON.")

    # context
    p_context = sub.add_parser("context", help="Assemble context for a query.")
    p_context.add_argument("query", help="Natural-language query.")
    p_context.add_argument("--max-tokens", type=int, default=4000, metavar="N", help="Token ceiling (default: 4000).")
    p_context.add_argument("--active-file", default=None, metavar="PATH", help="File the user is editing.")
    p_context.add_argument(
        "--level",
        default=CompressionLevel.NONE.value,
        choices=[lv.value for lv in CompressionLevel],
        help="Compression level applied to blocks (default: none).",
    )
    p_context.add_argument("--json", action="store_true", dest="as_json", help="Output the decisions as JSON.")

    # explain
    p_explain = sub.add_parser("explain", help="Explain contextual ranking for a query.")
    p_explain.add_argument("query", help="Natural-language query.")
    p_explain.add_argument("--active-file", default=None, metavar="PATH", help="File the user is editing.")

    # list
    p_list = sub.add_parser("list", help="List stored memories.")
    p_list.add_argument(
        "--limit",
        type=int,
        default=100,
        metavar="N",
        help="Maximum number of memories to show (default: 100).",
    )
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # delete
    p_delete = sub.add_parser("delete", help="Delete a memory by ID.")
    p_delete.add_argument("id", help="Memory ID to delete.")

    # count
    sub.add_parser("count", help="Print the number of stored memories.")

    # stats
    sub.add_parser("stats", help="Print engine statistics as JSON.")

    # compress
    p_compress = sub.add_parser("compress", help="Compress stored memories.")
    p_compress.add_argument("--force", action="store_true", help="Compress even below the thresholds.")

    # index
    p_index = sub.add_parser("index", help="Index workspace files.")
    p_index.add_argument("paths", nargs="+", help="Files to index.")
    p_index.add_argument("--language", default=None, help="Language of the indexed files.")

    # touch
    p_touch = sub.add_parser("touch", help="Record that a file was just modified.")
    p_touch.add_argument("path", help="Modified file path.")

    return parser


def _make_manager(args: argparse.Namespace) -> MemoryManager:
    settings = Settings.from_env()
    return MemoryManager(data_path=args.data, settings=settings)


def _memory_dict(memory) -> dict:
    return {
        "id": memory.id,
        "content": memory.content,
        "metadata": memory.metadata.to_dict(),
        "created": memory.created.isoformat(),
        "updated": memory.updated.isoformat(),
    }


async def _run(args: argparse.Namespace, manager: MemoryManager) -> int:
    await manager.initialize()

    if args.command == "store":
        text = args.text
        if text is None:
            text = sys.stdin.read()
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        tags = [t for t in args.tags.split(",") if t.strip()]
        memory = await manager.create_memory(
            text,
            type=args.type,
            tags=tags,
            project=args.project,
            language=args.language,
            source=args.source,
        )
        print(f"Stored memory {memory.id}.")

    elif args.command == "search":
        filters = MetadataFilters(types=[MemoryType(t) for t in args.type], tags=args.tag)
        results = await manager.search(
            args.query,
            SearchOptions(limit=args.n, filters=filters, sort_by=args.sort),
        )
        if not results:
            print("No memories found.")
            return 0
        if args.as_json:
            print(json.dumps([r.to_dict() for r in results], indent=2))
        else:
            for r in results:
                print(f"[{r.rank}] (similarity={r.similarity:.3f}, type={r.memory.metadata.type.value})")
                print(f"    {r.memory.content[:200]}")
                print(f"    id={r.memory.id}")
                print()

    elif args.command == "context":
        context = await manager.build_context(
            args.query,
            max_tokens=args.max_tokens,
            active_file_path=args.active_file,
            level=args.level,
        )
        if context.error:
            print(f"Error: {context.error}", file=sys.stderr)
            return 1
        if args.as_json:
            print(
                json.dumps(
                    {
                        "total_tokens": context.total_tokens,
                        "compression_ratio": round(context.compression_ratio, 4),
                        "included_files": context.included_files,
                        "truncated_files": context.truncated_files,
                        "excluded_files": context.excluded_files,
                        "content": context.content,
                    },
                    indent=2,
                )
            )
        elif not context.content:
            print("No relevant context found.")
        else:
            print(context.content)
            print()
            print(
                f"-- {context.total_tokens} tokens, {len(context.included_files)} included, "
                f"{len(context.truncated_files)} truncated, {len(context.excluded_files)} excluded"
            )

    elif args.command == "explain":
        for line in await manager.explain_ranking(args.query, args.active_file):
            print(line)

    elif args.command == "list":
        memories = await manager.list_all(limit=args.limit)
        if not memories:
            print("No memories stored.")
            return 0
        if args.as_json:
            print(json.dumps([_memory_dict(m) for m in memories], indent=2))
        else:
            for m in memories:
                tags = ",".join(m.metadata.tags)
                print(f"id={m.id} type={m.metadata.type.value} importance={m.metadata.importance:.3f} tags={tags}")
                print(f"    {m.content[:120]}")
                print()

    elif args.command == "delete":
        if not await manager.delete(args.id):
            print(f"Error: no memory with id {args.id}.", file=sys.stderr)
            return 1
        print(f"Deleted memory {args.id}.")

    elif args.command == "count":
        print(await manager.count())

    elif args.command == "stats":
        print(json.dumps(await manager.get_stats(), indent=2, default=str))

    elif args.command == "compress":
        batch = await manager.compress_memories(force=args.force)
        print(
            f"Compressed {len(batch.succeeded)} memories, skipped {len(batch.skipped)}, "
            f"failed {batch.failed_count}."
        )
        for memory_id, message in batch.failures:
            print(f"  {memory_id}: {message}", file=sys.stderr)

    elif args.command == "index":
        files: dict[str, str] = {}
        for path in args.paths:
            try:
                files[path] = Path(path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                print(f"Error: cannot read {path}: {exc}", file=sys.stderr)
                return 1
        batch = await manager.index_files(files, language=args.language)
        print(f"Indexed {len(batch.succeeded)} file(s), failed {batch.failed_count}.")
        for path, message in batch.failures:
            print(f"  {path}: {message}", file=sys.stderr)

    elif args.command == "touch":
        await manager.touch_file(args.path)
        print(f"Touched {args.path}.")

    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or Settings.from_env().log_level)

    manager = _make_manager(args)
    try:
        return asyncio.run(_run(args, manager))
    except ContextEngineError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
