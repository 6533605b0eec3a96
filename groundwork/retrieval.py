import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from qdrant_client import AsyncQdrantClient, models

from .db import Database

logger = logging.getLogger("uvicorn.error")

INDEX_ERROR_TEXT = "No curated knowledge could be retrieved due to an internal error."
NO_MATCHES_TEXT = "No curated knowledge matched the query."
NO_NUMERIC_IDS_TEXT = "Related knowledge was found, but no retrievable document identifiers were provided."
NO_RECORDS_TEXT = "No curated knowledge records were found for the retrieved identifiers."
NO_SECTIONS_TEXT = "No curated knowledge could be formatted for this query."

Embedder = Callable[[List[str]], Awaitable[List[List[float]]]]
PointId = Union[int, str]


@dataclass
class VectorMatch:
    id: PointId
    score: Optional[float] = None


class VectorIndex:
    """Curated-knowledge vectors in a Qdrant collection, one point per row id."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedder: Embedder,
        collection: str = "curated_knowledge",
        dim: int = 768,
    ):
        self.client = client
        self.embedder = embedder
        self.collection = collection
        self.dim = dim

    async def ensure_collection(self) -> None:
        if await self.client.collection_exists(self.collection):
            return
        await self.client.create_collection(
            collection_name=self.collection,
            vectors_config=models.VectorParams(size=self.dim, distance=models.Distance.COSINE),
        )
        logger.info("Created Qdrant collection '%s' (dim=%d)", self.collection, self.dim)

    async def upsert(self, point_id: PointId, text: str, payload: Optional[Dict[str, Any]] = None) -> None:
        vectors = await self.embedder([text])
        await self.client.upsert(
            collection_name=self.collection,
            points=[models.PointStruct(id=point_id, vector=vectors[0], payload=payload or {})],
            wait=True,
        )

    async def query(self, text: str, top_k: int = 5) -> List[VectorMatch]:
        vectors = await self.embedder([text])
        response = await self.client.query_points(
            collection_name=self.collection,
            query=vectors[0],
            limit=top_k,
            with_payload=False,
        )
        return [VectorMatch(id=point.id, score=point.score) for point in response.points]

    async def delete(self, point_id: PointId) -> None:
        await self.client.delete(
            collection_name=self.collection,
            points_selector=models.PointIdsList(points=[point_id]),
            wait=True,
        )

    async def close(self) -> None:
        await self.client.close()


def _numeric_id(value: PointId) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isascii() and text.isdigit():
        return int(text)
    return None


def format_section(position: int, record: Dict[str, Any], score: Optional[float]) -> Optional[str]:
    title = (record.get("title") or "").strip()
    content = (record.get("content") or "").strip()
    if not title and not content:
        return None
    lines = [f"({position}) {title or 'Untitled'}"]
    meta = []
    if record.get("source_url"):
        meta.append(f"Source: {record['source_url']}")
    if record.get("tags"):
        meta.append(f"Tags: {record['tags']}")
    if meta:
        lines.append(" | ".join(meta))
    if score is not None:
        lines.append(f"Relevance Score: {score:.3f}")
    if content:
        lines.append(content)
    return "\n".join(lines)


class KnowledgeRetriever:
    """Vector lookup plus store hydration. search() never raises."""

    def __init__(self, index: VectorIndex, db: Database, top_k: int = 5):
        self.index = index
        self.db = db
        self.top_k = top_k

    async def search(self, query: str) -> str:
        try:
            matches = await self.index.query(query, self.top_k)
        except Exception as exc:
            logger.warning("Vector query failed: %s", exc)
            return INDEX_ERROR_TEXT
        if not matches:
            return NO_MATCHES_TEXT

        scores: Dict[int, Optional[float]] = {}
        for match in matches:
            item_id = _numeric_id(match.id)
            if item_id is not None and item_id not in scores:
                scores[item_id] = match.score
        if not scores:
            return NO_NUMERIC_IDS_TEXT

        try:
            records = await self.db.get_curated_knowledge_by_ids(list(scores))
        except Exception as exc:
            logger.warning("Curated knowledge lookup failed: %s", exc)
            return NO_RECORDS_TEXT
        if not records:
            return NO_RECORDS_TEXT

        by_id = {int(record["id"]): record for record in records}
        sections: List[str] = []
        for item_id, score in scores.items():
            record = by_id.get(item_id)
            if record is None:
                continue
            section = format_section(len(sections) + 1, record, score)
            if section:
                sections.append(section)
        if not sections:
            return NO_SECTIONS_TEXT
        return "\n\n".join(sections)


class KnowledgeBase:
    """Curated knowledge writes: the row first, then its vector."""

    def __init__(self, db: Database, index: VectorIndex):
        self.db = db
        self.index = index

    async def add(
        self,
        title: str,
        content: str,
        source_url: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> int:
        item_id = await self.db.add_curated_knowledge(title, content, source_url=source_url, tags=tags)
        payload = {"title": title, "source_url": source_url, "tags": tags}
        try:
            await self.index.upsert(item_id, f"{title}\n\n{content}", payload)
        except Exception:
            # rows without a vector are unreachable
            await self.db.deactivate_curated_knowledge(item_id)
            raise
        return item_id

    async def remove(self, item_id: int) -> None:
        await self.db.deactivate_curated_knowledge(item_id)
        await self.index.delete(item_id)
