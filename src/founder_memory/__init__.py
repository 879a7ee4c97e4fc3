"""Founder Memory - project-scoped long-term memory for venture agents.

This package provides a retrieval-augmented memory engine and its MCP server.
Producers ingest documents and events; agents retrieve confidence-scored,
compressed context; founders and agents record facts that supersede older
ones without ever deleting history.

Main components:
- engine: MemoryEngine, the audited, rate-limited public API
- memory.ingestion / memory.retrieval / memory.updates: the pipelines
- storage.hybrid: Coordinated SQLite + ChromaDB storage layer
- config: Pydantic Settings for configuration management

Usage:
    # Run as MCP server
    python -m founder_memory

    # Or use the CLI
    founder-memory --help
"""

__all__ = ["main"]
__version__ = "0.1.0"


def main() -> None:
    """Main entry point for the Founder Memory MCP server."""
    from founder_memory.__main__ import main as _main
    _main()
