import pytest
from qdrant_client import AsyncQdrantClient

from groundwork.retrieval import (
    INDEX_ERROR_TEXT,
    NO_MATCHES_TEXT,
    NO_NUMERIC_IDS_TEXT,
    NO_RECORDS_TEXT,
    NO_SECTIONS_TEXT,
    KnowledgeBase,
    KnowledgeRetriever,
    VectorIndex,
    VectorMatch,
)
from tests.fakes import FakeVectorIndex, fake_vector


class BrokenStore:
    async def get_curated_knowledge_by_ids(self, ids):
        raise RuntimeError("database is locked")


class StaticStore:
    def __init__(self, records):
        self.records = records

    async def get_curated_knowledge_by_ids(self, ids):
        return list(self.records)


@pytest.mark.asyncio
async def test_formats_numbered_sections_in_match_order(db):
    first = await db.add_curated_knowledge(
        "Deploying Workers", "Run wrangler deploy.", source_url="https://dev/workers", tags="workers,deploy"
    )
    second = await db.add_curated_knowledge("Remix on Workers", "Use the Remix template.")
    index = FakeVectorIndex(
        [VectorMatch(id=str(second), score=0.91234), VectorMatch(id=first, score=0.8), VectorMatch(id=second, score=0.5)]
    )
    text = await KnowledgeRetriever(index, db).search("deploy remix")

    assert text == (
        "(1) Remix on Workers\nRelevance Score: 0.912\nUse the Remix template.\n\n"
        "(2) Deploying Workers\nSource: https://dev/workers | Tags: workers,deploy\n"
        "Relevance Score: 0.800\nRun wrangler deploy."
    )


@pytest.mark.asyncio
async def test_index_error_fallback(db):
    retriever = KnowledgeRetriever(FakeVectorIndex(error=ConnectionError("qdrant down")), db)
    assert await retriever.search("anything") == INDEX_ERROR_TEXT


@pytest.mark.asyncio
async def test_empty_matches_fallback(db):
    assert await KnowledgeRetriever(FakeVectorIndex([]), db).search("anything") == NO_MATCHES_TEXT


@pytest.mark.asyncio
async def test_non_numeric_ids_fallback(db):
    index = FakeVectorIndex([VectorMatch(id="5d6e1c1a-2d8f-4a53-9b1f-2d1f0f4b9a10", score=0.7)])
    assert await KnowledgeRetriever(index, db).search("anything") == NO_NUMERIC_IDS_TEXT


@pytest.mark.asyncio
@pytest.mark.parametrize("point_id", ["\u00b2", "\u0663", "12\u00b9"])
async def test_unicode_digit_ids_are_not_numeric(db, point_id):
    index = FakeVectorIndex([VectorMatch(id=point_id, score=0.7)])
    assert await KnowledgeRetriever(index, db).search("anything") == NO_NUMERIC_IDS_TEXT


@pytest.mark.asyncio
async def test_missing_records_fallback(db):
    index = FakeVectorIndex([VectorMatch(id=404, score=0.7)])
    assert await KnowledgeRetriever(index, db).search("anything") == NO_RECORDS_TEXT
    assert await KnowledgeRetriever(index, BrokenStore()).search("anything") == NO_RECORDS_TEXT


@pytest.mark.asyncio
async def test_unformattable_records_fallback():
    index = FakeVectorIndex([VectorMatch(id=1, score=0.7)])
    store = StaticStore([{"id": 2, "title": "Other", "content": "x"}])
    assert await KnowledgeRetriever(index, store).search("anything") == NO_SECTIONS_TEXT
    blank = StaticStore([{"id": 1, "title": "", "content": ""}])
    assert await KnowledgeRetriever(index, blank).search("anything") == NO_SECTIONS_TEXT


def test_fallback_strings_are_distinct():
    texts = {INDEX_ERROR_TEXT, NO_MATCHES_TEXT, NO_NUMERIC_IDS_TEXT, NO_RECORDS_TEXT, NO_SECTIONS_TEXT}
    assert len(texts) == 5 and all(texts)


@pytest.mark.asyncio
async def test_knowledge_base_add_and_remove(db):
    index = FakeVectorIndex()
    kb = KnowledgeBase(db, index)
    item_id = await kb.add("Workers KV", "KV is eventually consistent.", tags="kv")
    assert index.upserts[0]["id"] == item_id
    assert "KV is eventually consistent." in index.upserts[0]["text"]

    text = await KnowledgeRetriever(index, db).search("kv")
    assert text.startswith("(1) Workers KV")

    await kb.remove(item_id)
    assert index.deleted == [item_id]
    assert await db.get_curated_knowledge_by_ids([item_id]) == []


@pytest.mark.asyncio
async def test_knowledge_base_add_deactivates_row_when_indexing_fails(db):
    kb = KnowledgeBase(db, FakeVectorIndex(error=ConnectionError("qdrant down")))
    with pytest.raises(ConnectionError):
        await kb.add("Workers KV", "KV is eventually consistent.")
    rows = await db.fetchall("SELECT is_active FROM curated_knowledge")
    assert [row["is_active"] for row in rows] == [0]


@pytest.mark.asyncio
async def test_vector_index_over_in_memory_qdrant(db):
    async def embed(texts):
        return [fake_vector(text, 8) for text in texts]

    index = VectorIndex(AsyncQdrantClient(location=":memory:"), embed, collection="kb_test", dim=8)
    try:
        await index.ensure_collection()
        await index.ensure_collection()
        kb = KnowledgeBase(db, index)
        item_id = await kb.add("Durable Objects", "Strongly consistent coordination.")
        matches = await index.query("Durable Objects\n\nStrongly consistent coordination.", top_k=3)
        assert matches and matches[0].id == item_id
        assert matches[0].score == pytest.approx(1.0, abs=1e-3)

        text = await KnowledgeRetriever(index, db).search("Durable Objects\n\nStrongly consistent coordination.")
        assert text.startswith("(1) Durable Objects")

        await index.delete(item_id)
        assert await index.query("Durable Objects", top_k=3) == []
    finally:
        await index.close()
