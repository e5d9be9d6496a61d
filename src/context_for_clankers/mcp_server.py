"""
MCP (Model Context Protocol) server for context-for-clankers.

Exposes the MemoryManager as a set of tools so an assistant can store
workspace knowledge and pull token-bounded context for the file it is
working on.

Run as a stdio server:
    python -m context_for_clankers.mcp_server

Or via the installed entry-point:
    context-for-clankers-mcp

Configuration comes from the ``CONTEXT_FOR_CLANKERS_*`` environment
variables documented in ``context_for_clankers.config``.
"""

from __future__ import annotations

import json

from mcp.server.fastmcp import FastMCP

from .config import Settings
from .errors import ContextEngineError
from .logging_setup import configure_logging
from .memory import MemoryManager
from .models import MetadataFilters, MemoryType, SearchOptions

# Lazy-initialised singleton so the embedding model is only loaded once.
_manager: MemoryManager | None = None
_initialized = False


async def _get_manager() -> MemoryManager:
    global _manager, _initialized
    if _manager is None:
        _manager = MemoryManager(settings=Settings.from_env())
    if not _initialized:
        await _manager.initialize()
        _initialized = True
    return _manager


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "context-for-clankers",
    instructions=(
        "Workspace-aware memory and context assembly. "
        "Use `store_memory` to save guidelines, decisions or snippets worth "
        "keeping. Use `build_context` before answering a question about the "
        "code to get the most relevant stored material within a token budget. "
        "Use `search_memories` for a plain similarity search, "
        "`explain_ranking` to see why results were ranked as they were, and "
        "`touch_file` after editing a file so recent work ranks higher."
    ),
)


@mcp.tool()
async def store_memory(
    content: str,
    type: str = "note",
    tags: list[str] | None = None,
    project: str | None = None,
    source: str = "assistant",
) -> str:
    """
    Store a memory for later retrieval.

    Args:
        content: The text to remember.
        type:    One of code_snippet, documentation, conversation, task,
                 note, function, class, interface.
        tags:    Optional tags (letters, digits, '-' and '_').
        project: Optional project name for filtering.
        source:  Originating file path or provenance tag.

    Returns:
        A confirmation message with the new memory ID, or the validation error.
    """
    try:
        memory = await (await _get_manager()).create_memory(
            content, type=type, tags=tags, project=project, source=source
        )
    except ContextEngineError as exc:
        return f"Error: {exc.message}"
    return f"Stored memory {memory.id}."


@mcp.tool()
async def search_memories(
    query: str,
    limit: int = 10,
    types: list[str] | None = None,
    tags: list[str] | None = None,
) -> str:
    """
    Similarity search over stored memories.

    Args:
        query: Natural-language query.
        limit: Maximum number of results (default 10).
        types: Only return these memory types.
        tags:  Only return memories carrying at least one of these tags.

    Returns:
        JSON array of results with id, content, similarity, rank, type,
        tags and source.
    """
    try:
        filters = MetadataFilters(types=[MemoryType(t) for t in types or []], tags=tags or [])
        results = await (await _get_manager()).search(query, SearchOptions(limit=limit, filters=filters))
    except (ContextEngineError, ValueError) as exc:
        return f"Error: {getattr(exc, 'message', exc)}"
    if not results:
        return "No memories found."
    return json.dumps([r.to_dict() for r in results], indent=2)


@mcp.tool()
async def build_context(
    query: str,
    max_tokens: int = 4000,
    active_file_path: str | None = None,
    compression_level: str = "none",
) -> str:
    """
    Assemble the most relevant stored context for a query within a token
    budget.

    Args:
        query:             What the context is for.
        max_tokens:        Token ceiling; 80% of it is used.
        active_file_path:  File currently being edited, boosts nearby results.
        compression_level: none, light, moderate or aggressive.

    Returns:
        The assembled context followed by a one-line summary of what was
        included, truncated and excluded.
    """
    try:
        context = await (await _get_manager()).build_context(
            query,
            max_tokens=max_tokens,
            active_file_path=active_file_path,
            level=compression_level,
        )
    except (ContextEngineError, ValueError) as exc:
        return f"Error: {getattr(exc, 'message', exc)}"
    if context.error:
        return f"Error: {context.error}"
    if not context.content:
        return "No relevant context found."
    return (
        f"{context.content}\n\n"
        f"-- {context.total_tokens} tokens; included: {', '.join(context.included_files) or 'none'}; "
        f"truncated: {', '.join(context.truncated_files) or 'none'}; "
        f"excluded: {', '.join(context.excluded_files) or 'none'}"
    )


@mcp.tool()
async def explain_ranking(query: str, active_file_path: str | None = None) -> str:
    """
    Explain how the top results for a query were scored.

    Returns:
        Per-result semantic, temporal, spatial and structural scores with
        their weighted contributions and final score.
    """
    lines = await (await _get_manager()).explain_ranking(query, active_file_path)
    return "\n".join(lines)


@mcp.tool()
async def list_memories(limit: int = 50) -> str:
    """
    List stored memories (no ranking applied).

    Args:
        limit: Maximum number of entries to return (default 50).

    Returns:
        JSON array of memory entries with id, content and metadata.
    """
    memories = await (await _get_manager()).list_all(limit=limit)
    if not memories:
        return "No memories stored."
    return json.dumps(
        [{"id": m.id, "content": m.content, "metadata": m.metadata.to_dict()} for m in memories],
        indent=2,
        default=str,
    )


@mcp.tool()
async def delete_memory(memory_id: str) -> str:
    """
    Delete a stored memory by its ID.

    Returns:
        A confirmation message.
    """
    if await (await _get_manager()).delete(memory_id):
        return f"Deleted memory {memory_id}."
    return f"No memory with id {memory_id}."


@mcp.tool()
async def count_memories() -> str:
    """
    Return the total number of memories currently stored.
    """
    n = await (await _get_manager()).count()
    return f"{n} {'memory' if n == 1 else 'memories'} stored."


@mcp.tool()
async def memory_stats() -> str:
    """
    Return store, cache, compression and search statistics as JSON.
    """
    return json.dumps(await (await _get_manager()).get_stats(), indent=2, default=str)


@mcp.tool()
async def touch_file(path: str) -> str:
    """
    Record that a workspace file was just modified so its memories rank as
    recent.
    """
    await (await _get_manager()).touch_file(path)
    return f"Recorded modification of {path}."


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    configure_logging(Settings.from_env().log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
