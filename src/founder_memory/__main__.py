"""MCP server entry point for the founder memory engine.

This module provides the FastMCP server exposing project-scoped memory
operations as tools, plus a direct-call mode for hooks and scripts.

Usage:
    python -m founder_memory
    python -m founder_memory --sqlite-path ~/.founder-memory/memory.db
    python -m founder_memory --call memory_retrieve --args '{"project_id": "acme", "query": "runway"}'
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from founder_memory.config import MemorySettings
from founder_memory.engine import MemoryEngine
from founder_memory.memory.retrieval import RetrievalError
from founder_memory.memory.types import IngestOptions, MemoryType
from founder_memory.memory.updates import ConflictResolutionError
from founder_memory.security import RateLimitExceeded

logger = logging.getLogger(__name__)

mcp = FastMCP("founder-memory")

# Set by initialize_components() or call_tool_directly()
engine: Optional[MemoryEngine] = None


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr; stdout carries the MCP protocol."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments, defaulting to MemorySettings values."""
    settings = MemorySettings()

    parser = argparse.ArgumentParser(
        prog="founder-memory",
        description="Founder Memory - project-scoped long-term memory MCP server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--call",
        type=str,
        metavar="TOOL_NAME",
        help="Call a tool directly and print its JSON result instead of serving",
    )
    parser.add_argument(
        "--args",
        type=str,
        default="{}",
        help="JSON arguments for --call",
    )

    # Storage configuration
    parser.add_argument(
        "--sqlite-path",
        type=str,
        default=str(settings.sqlite_path) if settings.sqlite_path else None,
        help="Path to SQLite database file",
    )
    parser.add_argument(
        "--chroma-path",
        type=str,
        default=str(settings.chroma_path) if settings.chroma_path else None,
        help="Path to ChromaDB persistent storage directory",
    )
    parser.add_argument(
        "--collection",
        type=str,
        default=settings.collection_name,
        help="ChromaDB collection name",
    )

    # Ollama configuration
    parser.add_argument(
        "--ollama-host",
        type=str,
        default=settings.ollama_host,
        help="Ollama server host URL",
    )
    parser.add_argument(
        "--embedding-model",
        type=str,
        default=settings.embedding_model,
        help="Ollama embedding model name",
    )
    parser.add_argument(
        "--completion-model",
        type=str,
        default=settings.completion_model,
        help="Ollama completion model used for classification and compression",
    )
    parser.add_argument(
        "--ollama-timeout",
        type=int,
        default=settings.ollama_timeout,
        help="Ollama request timeout in seconds",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    return parser.parse_args()


def settings_from_args(args: argparse.Namespace) -> MemorySettings:
    """Overlay CLI arguments on environment-derived settings."""
    return MemorySettings(
        sqlite_path=Path(args.sqlite_path).expanduser() if args.sqlite_path else None,
        chroma_path=Path(args.chroma_path).expanduser() if args.chroma_path else None,
        collection_name=args.collection,
        ollama_host=args.ollama_host,
        embedding_model=args.embedding_model,
        completion_model=args.completion_model,
        ollama_timeout=args.ollama_timeout,
        log_level=args.log_level,
    )


async def initialize_components(args: argparse.Namespace) -> MemoryEngine:
    """Build the MemoryEngine with stores and model clients.

    Raises:
        Exception: If any component initialization fails
    """
    logger.info("Initializing components...")
    settings = settings_from_args(args)

    logger.info(
        f"Configuration: "
        f"sqlite_path={settings.sqlite_path}, "
        f"chroma_path={settings.chroma_path}, "
        f"collection={settings.collection_name}, "
        f"ollama_host={settings.ollama_host}, "
        f"embedding_model={settings.embedding_model}, "
        f"completion_model={settings.completion_model}"
    )

    created = await MemoryEngine.create(settings)
    logger.info("MemoryEngine initialized successfully")
    return created


def _failure(tool: str, e: Exception) -> dict[str, Any]:
    """Map an exception to a tool error response."""
    if isinstance(e, RateLimitExceeded):
        logger.warning(f"{tool} rate limited: {e}")
        return {
            "success": False,
            "error": str(e),
            "rate_limited": True,
            "reset_at": e.reset_at,
        }
    if isinstance(e, (ValueError, ConflictResolutionError)):
        logger.warning(f"{tool} rejected: {e}")
        return {"success": False, "error": str(e)}
    logger.error(f"{tool} failed: {e}", exc_info=True)
    return {"success": False, "error": str(e)}


def _parse_type(memory_type: Optional[str]) -> Optional[MemoryType]:
    if memory_type is None:
        return None
    try:
        return MemoryType.parse(memory_type)
    except ValueError:
        raise ValueError(
            f"Invalid memory_type: {memory_type}. "
            f"Must be one of: {[t.value for t in MemoryType]}"
        ) from None


# =============================================================================
# MCP Tool Handlers - Ingestion and retrieval
# =============================================================================


@mcp.tool()
async def memory_ingest(
    project_id: str,
    content: str,
    memory_type: Optional[str] = None,
    founder: bool = False,
    actor: Optional[str] = None,
    resolve_conflicts: bool = False,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Ingest a document or event into a project's long-term memory.

    The text is sanitized, chunked, deduplicated, classified and embedded.
    Ingestion is not atomic: failed chunks are reported and the rest stored.

    Args:
        project_id: Project the memory belongs to
        content: Raw text to remember
        memory_type: Force a type (decision, metric, investor_feedback, task,
            research, note) instead of classifying each chunk
        founder: True when a founder wrote the content
        actor: Who recorded it
        resolve_conflicts: Let new chunks supersede conflicting older ones
        metadata: Optional annotations copied onto every chunk

    Returns:
        Result dictionary with success, chunk_ids, counts, errors and warnings
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        options = IngestOptions(
            actor=actor,
            founder=founder,
            memory_type=_parse_type(memory_type),
            resolve_conflicts=resolve_conflicts,
        )
        result = await engine.ingest(project_id, content, metadata=metadata, options=options)
        return {"success": True, **result.to_dict()}
    except Exception as e:
        return _failure("memory_ingest", e)


@mcp.tool()
async def memory_retrieve(
    project_id: str,
    query: str,
    limit: Optional[int] = None,
    min_similarity: Optional[float] = None,
    memory_types: Optional[list[str]] = None,
    actor: Optional[str] = None,
) -> dict[str, Any]:
    """Retrieve confidence-scored context for a question about a project.

    Args:
        project_id: Project to search
        query: Natural-language question
        limit: Maximum chunks to use (default 8, at most 20)
        min_similarity: Similarity floor (default 0.65)
        memory_types: Only consider these memory types
        actor: Who is asking

    Returns:
        Result dictionary with text, confidence, found and sources. When
        nothing matches, found is False and confidence is 0. A broken search
        backend is reported as success False with search_failed True.
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        types = [_parse_type(t) for t in memory_types] if memory_types else None
        result = await engine.retrieve(
            project_id,
            query,
            limit=limit,
            min_similarity=min_similarity,
            required_types=types,
            actor=actor,
        )
        return {
            "success": True,
            **result.to_dict(),
            "results": [r.to_dict() for r in result.results],
        }
    except RetrievalError as e:
        logger.error(f"memory_retrieve search failed: {e}")
        return {"success": False, "error": str(e), "search_failed": True}
    except Exception as e:
        return _failure("memory_retrieve", e)


# =============================================================================
# MCP Tool Handlers - Updates
# =============================================================================


@mcp.tool()
async def memory_update(
    project_id: str,
    content: str,
    memory_type: Optional[str] = None,
    founder: bool = False,
    actor: Optional[str] = None,
    chunk_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> dict[str, Any]:
    """Record a fact that may replace an older one.

    Without chunk_id, the most similar active chunk of the same type is
    superseded when it conflicts. With chunk_id, that chunk is replaced.
    Founder-sourced memories are never overridden by agent updates.

    Args:
        project_id: Project the memory belongs to
        content: The new fact
        memory_type: Type of the fact; classified when omitted
        founder: True when a founder states the fact
        actor: Who recorded it
        chunk_id: Explicit chunk to supersede
        reason: Why the chunk is superseded (with chunk_id)

    Returns:
        Result dictionary with outcome, chunk_id, previous_id and similarity
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        if chunk_id:
            result = await engine.supersede(
                project_id, chunk_id, content, founder=founder, reason=reason, actor=actor
            )
        else:
            result = await engine.update(
                project_id,
                content,
                memory_type=_parse_type(memory_type),
                founder=founder,
                actor=actor,
            )
        return {"success": True, **result.to_dict()}
    except Exception as e:
        return _failure("memory_update", e)


@mcp.tool()
async def memory_correct(
    project_id: str,
    chunk_id: str,
    content: str,
    reason: str,
    actor: Optional[str] = None,
) -> dict[str, Any]:
    """Founder correction: replace a chunk with corrected content.

    Args:
        project_id: Project the memory belongs to
        chunk_id: Chunk being corrected
        content: Corrected text
        reason: What was wrong
        actor: Who corrected it

    Returns:
        Result dictionary with outcome, chunk_id and previous_id
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = await engine.correct(project_id, chunk_id, content, reason, actor=actor)
        return {"success": True, **result.to_dict()}
    except Exception as e:
        return _failure("memory_correct", e)


@mcp.tool()
async def memory_refine(
    project_id: str,
    chunk_id: str,
    content: str,
    founder: bool = False,
    actor: Optional[str] = None,
) -> dict[str, Any]:
    """Add detail to a chunk; the original stays active.

    Returns:
        Result dictionary with outcome, chunk_id and previous_id
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = await engine.refine(project_id, chunk_id, content, founder=founder, actor=actor)
        return {"success": True, **result.to_dict()}
    except Exception as e:
        return _failure("memory_refine", e)


@mcp.tool()
async def memory_invalidate(
    project_id: str,
    chunk_id: str,
    reason: str,
    actor: Optional[str] = None,
) -> dict[str, Any]:
    """Retire a chunk that is no longer true, without a replacement.

    Returns:
        Result dictionary with outcome and previous_id
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        result = engine.invalidate(project_id, chunk_id, reason, actor=actor)
        return {"success": True, **result.to_dict()}
    except Exception as e:
        return _failure("memory_invalidate", e)


# =============================================================================
# MCP Tool Handlers - Inspection
# =============================================================================


@mcp.tool()
async def memory_history(project_id: str, chunk_id: str) -> dict[str, Any]:
    """Show every version of the fact a chunk belongs to, oldest first.

    Returns:
        Result dictionary with versions and current (the live version or None)
    """
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        versions = engine.history(project_id, chunk_id)
        live = versions[-1] if versions and versions[-1].is_active else None
        return {
            "success": True,
            "versions": [v.to_dict() for v in versions],
            "current": live.to_dict() if live else None,
        }
    except Exception as e:
        return _failure("memory_history", e)


@mcp.tool()
async def memory_audit(
    project_id: str,
    operation: Optional[str] = None,
    limit: int = 50,
) -> dict[str, Any]:
    """Recent audit entries for a project plus suspicious-activity warnings."""
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        return {"success": True, **engine.audit_log(project_id, operation=operation, limit=limit)}
    except Exception as e:
        return _failure("memory_audit", e)


@mcp.tool()
async def memory_rate_limits(project_id: str) -> dict[str, Any]:
    """Remaining quota per operation class for a project."""
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        return {"success": True, "limits": engine.rate_limit_status(project_id)}
    except Exception as e:
        return _failure("memory_rate_limits", e)


@mcp.tool()
async def memory_health(project_id: str) -> dict[str, Any]:
    """Report stale memories, deep revision chains, pending vector syncs and retrieval usage."""
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        return {"success": True, **engine.health(project_id)}
    except Exception as e:
        return _failure("memory_health", e)


@mcp.tool()
async def memory_sync(batch_size: int = 100) -> dict[str, Any]:
    """Retry vector-store writes left pending in the outbox."""
    if engine is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        processed = await engine.sync(batch_size=batch_size)
        return {
            "success": True,
            "processed": processed,
            "outbox": engine.store.get_outbox_status(),
        }
    except Exception as e:
        return _failure("memory_sync", e)


# =============================================================================
# Direct call mode
# =============================================================================


async def call_tool_directly(
    tool_name: str,
    args_json: str,
    memory_engine: MemoryEngine,
) -> dict[str, Any]:
    """Call a tool function without going through the MCP transport.

    Args:
        tool_name: Name of the tool, e.g. "memory_retrieve"
        args_json: JSON object with the tool's keyword arguments
        memory_engine: Initialized engine

    Returns:
        The tool's result dictionary, or an error dictionary
    """
    global engine
    engine = memory_engine

    try:
        tool_args = json.loads(args_json)
    except json.JSONDecodeError as e:
        return {"success": False, "error": f"Invalid JSON arguments: {e}"}
    if not isinstance(tool_args, dict):
        return {"success": False, "error": "Arguments must be a JSON object"}

    tool_handlers = {
        "memory_ingest": memory_ingest,
        "memory_retrieve": memory_retrieve,
        "memory_update": memory_update,
        "memory_correct": memory_correct,
        "memory_refine": memory_refine,
        "memory_invalidate": memory_invalidate,
        "memory_history": memory_history,
        "memory_audit": memory_audit,
        "memory_rate_limits": memory_rate_limits,
        "memory_health": memory_health,
        "memory_sync": memory_sync,
    }

    handler = tool_handlers.get(tool_name)
    if handler is None:
        return {
            "success": False,
            "error": f"Unknown tool: {tool_name}. Available: {sorted(tool_handlers)}",
        }

    try:
        return await handler(**tool_args)
    except TypeError as e:
        return {"success": False, "error": f"Invalid arguments for {tool_name}: {e}"}
    except Exception as e:
        logger.error(f"Direct call to {tool_name} failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


def run_direct_call(args: argparse.Namespace) -> None:
    """Initialize, call one tool, print its JSON result and exit."""
    setup_logging("WARNING")

    async def _run() -> dict[str, Any]:
        memory_engine = await initialize_components(args)
        try:
            return await call_tool_directly(args.call, args.args, memory_engine)
        finally:
            await memory_engine.close()

    try:
        result = asyncio.run(_run())
    except Exception as e:
        result = {"success": False, "error": f"Initialization failed: {e}"}

    print(json.dumps(result, default=str))
    sys.exit(0 if result.get("success") else 1)


def handle_shutdown(signum: int, frame: Any) -> None:
    """Exit cleanly on SIGINT/SIGTERM."""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main() -> None:
    """Run the MCP server over stdio, or a single direct tool call."""
    global engine

    args = parse_arguments()

    if args.call:
        run_direct_call(args)
        return

    setup_logging(args.log_level)
    logger.info("Starting Founder Memory MCP server...")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        engine = loop.run_until_complete(initialize_components(args))
    except Exception as e:
        logger.error(f"Failed to initialize components: {e}", exc_info=True)
        sys.exit(1)

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    try:
        mcp.run(transport="stdio")
    finally:
        if engine is not None:
            loop.run_until_complete(engine.close())
        loop.close()
        logger.info("Founder Memory MCP server stopped")


if __name__ == "__main__":
    main()
