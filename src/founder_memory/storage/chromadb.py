"""ChromaDB storage layer for chunk vectors.

This module wraps a single ChromaDB collection holding one vector per chunk:
- Persistent storage (production) via PersistentClient
- Ephemeral storage (testing) via EphemeralClient
- Cosine distance metric
- Metadata (project_id, memory_type, is_active) for server-side filtering
"""

from pathlib import Path
from typing import Any, Optional

import chromadb  # type: ignore[import-not-found]
from chromadb.api.models.Collection import Collection  # type: ignore[import-not-found]


class StorageError(Exception):
    """Custom exception for vector storage errors."""

    pass


class ChromaStore:
    """Vector storage layer using ChromaDB.

    Ids are supplied by the caller so a vector always shares the id of the
    SQLite row it belongs to.

    Args:
        db_path: Path to ChromaDB persistent storage directory.
                 Defaults to ~/.founder_memory/chroma_db.
        collection_name: Name of the collection (default: "memory_chunks")
        ephemeral: If True, use in-memory storage for testing (default: False)
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        collection_name: str = "memory_chunks",
        ephemeral: bool = False,
    ):
        self.collection_name = collection_name
        self.ephemeral = ephemeral

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".founder_memory" / "chroma_db"

        try:
            if ephemeral:
                self._client = chromadb.EphemeralClient()
            else:
                if self.db_path is not None:
                    self.db_path.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.db_path))

            self._collection = self._get_or_create_collection()

        except Exception as e:
            raise StorageError(f"Failed to initialize ChromaDB storage: {e}") from e

    def _get_or_create_collection(self) -> Collection:
        try:
            return self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as e:
            raise StorageError(f"Failed to get or create collection: {e}") from e

    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict],
    ) -> None:
        """Insert or replace vectors by id.

        Raises:
            StorageError: If the write fails
            ValueError: If input lists have different lengths
        """
        if not (len(ids) == len(embeddings) == len(documents) == len(metadatas)):
            raise ValueError(
                f"Length mismatch: ids={len(ids)}, embeddings={len(embeddings)}, "
                f"documents={len(documents)}, metadatas={len(metadatas)}"
            )
        if not ids:
            return

        try:
            self._collection.upsert(
                ids=ids,
                embeddings=embeddings,  # type: ignore[arg-type]
                documents=documents,
                metadatas=metadatas,  # type: ignore[arg-type]
            )
        except Exception as e:
            raise StorageError(f"Failed to upsert vectors: {e}") from e

    def query(
        self,
        query_embedding: list[float],
        n_results: int,
        where: dict,
    ) -> dict:
        """Nearest-neighbour search restricted by a metadata filter.

        ``where`` is required: every query against this collection is scoped.

        Returns:
            Dictionary with ``ids``, ``documents``, ``metadatas`` and
            ``distances`` (cosine distance, lower is closer)

        Raises:
            StorageError: If the search fails
        """
        empty: dict[str, list] = {"ids": [], "documents": [], "metadatas": [], "distances": []}
        try:
            if self._collection.count() == 0:
                return empty

            results = self._collection.query(
                query_embeddings=[query_embedding],  # type: ignore[arg-type]
                n_results=n_results,
                include=["documents", "metadatas", "distances"],  # type: ignore[list-item]
                where=where,  # type: ignore[arg-type]
            )

            # ChromaDB wraps results in one list per query embedding
            return {
                "ids": results["ids"][0] if results["ids"] else [],
                "documents": results["documents"][0] if results["documents"] else [],
                "metadatas": results["metadatas"][0] if results["metadatas"] else [],
                "distances": results["distances"][0] if results["distances"] else [],
            }

        except Exception as e:
            raise StorageError(f"Failed to search vectors: {e}") from e

