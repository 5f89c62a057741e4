"""Chunk store backed by Qdrant."""
import math
import numbers
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from pdfqa.exceptions import (
    BatchSizeMismatchError,
    DimensionMismatchError,
    MalformedResponseError,
    StorageError,
)
from pdfqa.models.document import Chunk, Document, RetrievedChunk
from pdfqa.utils.logger import logger


def _coerce_similarity(value: Any, row_id: Any) -> float:
    """Similarity arrives as a number or a numeric string; nothing else is accepted."""
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        similarity = float(value)
    elif isinstance(value, str):
        try:
            similarity = float(value.strip())
        except ValueError as e:
            raise MalformedResponseError(
                f"Non-numeric similarity {value!r} for chunk {row_id}"
            ) from e
    else:
        raise MalformedResponseError(
            f"Unsupported similarity type {type(value).__name__} for chunk {row_id}"
        )

    if not math.isfinite(similarity):
        raise MalformedResponseError(f"Non-finite similarity for chunk {row_id}")
    return similarity


def decode_match_rows(rows: Sequence[Dict[str, Any]]) -> List[RetrievedChunk]:
    """
    Decode similarity-search rows ``{id, content, page_number, similarity}``.

    Args:
        rows: Raw rows in store order

    Returns:
        RetrievedChunk list in the same order

    Raises:
        MalformedResponseError: If a row is missing fields or has an unsupported shape
    """
    chunks = []
    for row in rows or []:
        if not isinstance(row, dict) or row.get("id") is None:
            raise MalformedResponseError(f"Unrecognized match row: {row!r}")
        try:
            page_number = int(row.get("page_number") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid page number for chunk {row['id']}") from e
        chunks.append(
            RetrievedChunk(
                id=str(row["id"]),
                content=str(row.get("content") or ""),
                page_number=page_number,
                similarity=_coerce_similarity(row.get("similarity"), row["id"]),
            )
        )
    return chunks


def _session_filter(session_id: str) -> Filter:
    return Filter(must=[FieldCondition(key="session_id", match=MatchValue(value=session_id))])


class VectorStore:
    """Persists chunks with their embeddings and serves scoped similarity search."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection_name: str = "pdf_chunks",
        batch_size: int = 50,
    ):
        """
        Initialize the store.

        Args:
            client: Qdrant async client (local path, remote URL or ``:memory:``)
            collection_name: Collection holding every document's chunks
            batch_size: Points per upsert call
        """
        self.client = client
        self.collection_name = collection_name
        self.batch_size = batch_size

    @classmethod
    def from_location(cls, location: str, api_key: Optional[str] = None, **kwargs) -> "VectorStore":
        """Build a store from a URL, a local directory or ``:memory:``."""
        if location == ":memory:":
            client = AsyncQdrantClient(location=":memory:")
        elif location.startswith(("http://", "https://")):
            client = AsyncQdrantClient(url=location, api_key=api_key)
        else:
            client = AsyncQdrantClient(path=location)
        logger.info(f"Qdrant client initialized at {location}")
        return cls(client, **kwargs)

    async def _collection_dimension(self) -> Optional[int]:
        if not await self.client.collection_exists(self.collection_name):
            return None
        info = await self.client.get_collection(self.collection_name)
        return info.config.params.vectors.size

    async def _ensure_collection(self, vector_size: int) -> None:
        existing = await self._collection_dimension()
        if existing is None:
            await self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
            )
            await self.client.create_payload_index(
                collection_name=self.collection_name,
                field_name="session_id",
                field_schema=PayloadSchemaType.KEYWORD,
            )
            logger.info(f"Created Qdrant collection: {self.collection_name} (dim={vector_size})")
        elif existing != vector_size:
            raise DimensionMismatchError(
                f"Collection {self.collection_name} stores {existing}-dimensional vectors, "
                f"got {vector_size}"
            )

    async def save_chunks(
        self,
        document: Document,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]],
    ) -> int:
        """
        Store a document's chunks and embeddings.

        Every consistency check runs before the first write, so a rejected
        batch persists nothing.

        Args:
            document: Owning document
            chunks: Chunks in index order
            embeddings: One vector per chunk, same order

        Returns:
            Number of stored chunks

        Raises:
            BatchSizeMismatchError: If chunk and embedding counts differ
            DimensionMismatchError: If vectors disagree on dimension
            StorageError: If Qdrant rejects a write
        """
        if not chunks:
            return 0
        if len(chunks) != len(embeddings):
            raise BatchSizeMismatchError(
                f"Number of chunks ({len(chunks)}) must match number of embeddings ({len(embeddings)})"
            )

        dimensions = sorted({len(embedding or []) for embedding in embeddings})
        if len(dimensions) != 1:
            raise DimensionMismatchError(
                f"Inconsistent embedding dimensions found: {dimensions}. "
                "All embeddings must have same length"
            )
        if dimensions[0] <= 0:
            raise DimensionMismatchError("Invalid embedding dimension (0). Check embedding generation.")

        await self._ensure_collection(dimensions[0])

        document_payload = {
            "session_id": document.session_id,
            "filename": document.filename,
            "total_pages": document.total_pages,
            "total_chunks": len(chunks),
            "created_at": document.created_at.isoformat(),
        }
        points = [
            PointStruct(
                id=chunk.id,
                vector=list(embedding),
                payload={
                    **document_payload,
                    "document_id": chunk.document_id,
                    "chunk_index": chunk.chunk_index,
                    "page_number": chunk.page_number,
                    "char_start": chunk.char_start,
                    "char_end": chunk.char_end,
                    "content": chunk.text,
                },
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        num_batches = (len(points) + self.batch_size - 1) // self.batch_size
        for batch_idx in range(num_batches):
            start_idx = batch_idx * self.batch_size
            batch = points[start_idx:start_idx + self.batch_size]
            try:
                await self.client.upsert(collection_name=self.collection_name, points=batch, wait=True)
            except Exception as e:
                logger.error(
                    f"Error storing batch {batch_idx + 1}/{num_batches} for document {document.session_id}: {str(e)}",
                    exc_info=True,
                )
                raise StorageError(
                    f"Failed to insert embeddings batch starting at {start_idx}: {str(e)}"
                ) from e

        logger.info(
            f"Stored {len(points)} chunks for document {document.session_id} in {num_batches} batches",
            extra={"session_id": document.session_id, "chunk_count": len(points)},
        )
        return len(points)

    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        session_id: str,
        match_threshold: float,
        match_count: int,
    ) -> List[Dict[str, Any]]:
        """
        Similarity search scoped to one session.

        Args:
            query_embedding: Query vector
            session_id: Document/session scope
            match_threshold: Minimum similarity
            match_count: Maximum rows

        Returns:
            Rows ``{id, content, page_number, similarity}`` ordered by the store
        """
        if not await self.client.collection_exists(self.collection_name):
            logger.warning(f"Collection {self.collection_name} does not exist yet")
            return []

        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=list(query_embedding),
            query_filter=_session_filter(session_id),
            limit=match_count,
            score_threshold=match_threshold,
            with_payload=True,
        )
        return [
            {
                "id": str(point.id),
                "content": (point.payload or {}).get("content", ""),
                "page_number": (point.payload or {}).get("page_number", 0),
                "similarity": point.score,
            }
            for point in response.points
        ]

    async def get_document(self, session_id: str) -> Optional[Document]:
        """Rebuild document metadata from stored chunk payloads."""
        if not await self.client.collection_exists(self.collection_name):
            return None

        points, _ = await self.client.scroll(
            collection_name=self.collection_name,
            scroll_filter=_session_filter(session_id),
            limit=1,
            with_payload=True,
            with_vectors=False,
        )
        if not points:
            return None

        payload = points[0].payload or {}
        return Document(
            session_id=session_id,
            filename=payload.get("filename", ""),
            total_pages=int(payload.get("total_pages", 0)),
            total_chunks=int(payload.get("total_chunks", 0)),
            created_at=datetime.fromisoformat(payload["created_at"]),
        )

    async def close(self) -> None:
        """Close the Qdrant client."""
        await self.client.close()
