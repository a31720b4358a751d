import asyncio
from pathlib import Path

import pytest

from portfolio_chat.config import RetrievalConfig
from portfolio_chat.errors import RetrievalError
from portfolio_chat.retrieval.corpus import Corpus, CorpusShard, load_corpus
from portfolio_chat.retrieval.embedder import HashingEmbedder
from portfolio_chat.retrieval.engine import RetrievalEngine
from portfolio_chat.retrieval.index import (
    EmbeddingEntry,
    EmbeddingIndex,
    EmbeddingIndexMeta,
    build_embedding_index,
    load_index,
    write_index,
)
from portfolio_chat.schemas import RetrievalQuery
from portfolio_chat.types import CorpusDocument

META = EmbeddingIndexMeta(schema_version=1, build_id="test", source_hash="x")


def _doc(doc_id: str, source: str = "projects", kind: str = "project") -> CorpusDocument:
    return CorpusDocument(doc_id=doc_id, source=source, kind=kind, title=doc_id.title(), text=doc_id)  # type: ignore[arg-type]


def test_search_ties_keep_insertion_order() -> None:
    index = EmbeddingIndex(
        [
            EmbeddingEntry("b", (1.0, 0.0)),
            EmbeddingEntry("a", (1.0, 0.0)),
            EmbeddingEntry("c", (0.0, 1.0)),
        ],
        META,
    )

    assert [doc_id for doc_id, _ in index.search([1.0, 0.0], 3)] == ["b", "a", "c"]
    assert index.search([1.0, 0.0], 0) == []


def test_search_ties_follow_candidate_order() -> None:
    index = EmbeddingIndex(
        [
            EmbeddingEntry("b", (1.0, 0.0)),
            EmbeddingEntry("a", (1.0, 0.0)),
            EmbeddingEntry("c", (0.5, 0.5)),
        ],
        META,
    )

    ranked = index.search([1.0, 0.0], 3, candidates=["a", "missing", "c", "b"])

    assert [doc_id for doc_id, _ in ranked] == ["a", "b", "c"]


class _FixedEmbedder:
    model_name = "fixed-2"

    async def aembed_query(self, text: str) -> list[float]:
        return [1.0, 0.0]


def test_retrieval_ties_resolve_in_corpus_order() -> None:
    documents = [_doc("alpha"), _doc("beta"), _doc("gamma")]
    # Index file lists the documents in a different order than the corpus.
    index = EmbeddingIndex(
        [
            EmbeddingEntry("gamma", (1.0, 0.0)),
            EmbeddingEntry("beta", (1.0, 0.0)),
            EmbeddingEntry("alpha", (1.0, 0.0)),
        ],
        META,
    )
    corpus = Corpus(projects=CorpusShard("projects", documents, index), resume=CorpusShard("resume", []))
    engine = RetrievalEngine(corpus, _FixedEmbedder())  # type: ignore[arg-type]

    outcome = asyncio.run(engine.retrieve(RetrievalQuery(source="projects", text="anything", limit=2)))

    assert [hit.document.doc_id for hit in outcome.documents] == ["alpha", "beta"]
    assert [hit.rank for hit in outcome.documents] == [1, 2]


def test_index_rejects_duplicates_and_mixed_dimensions() -> None:
    with pytest.raises(ValueError):
        EmbeddingIndex([EmbeddingEntry("a", (1.0,)), EmbeddingEntry("a", (1.0,))], META)
    with pytest.raises(ValueError):
        EmbeddingIndex([EmbeddingEntry("a", (1.0,)), EmbeddingEntry("b", (1.0, 0.0))], META)


def test_index_round_trips_through_json(tmp_path: Path, embedder: HashingEmbedder) -> None:
    documents = [_doc("alpha"), _doc("beta")]
    index = build_embedding_index(documents, embedder)
    write_index(index, tmp_path / "projects.embeddings.json")

    loaded = load_index(tmp_path / "projects.embeddings.json")

    assert loaded.ids == ["alpha", "beta"]
    assert loaded.meta.model == "hashing-256"
    assert loaded.meta.source_hash == index.meta.source_hash
    assert loaded.vector("beta") == index.vector("beta")


def test_index_rejects_unknown_schema_version() -> None:
    with pytest.raises(ValueError):
        EmbeddingIndex.from_dict({"meta": {"schemaVersion": 99}, "entries": []})


def test_corpus_loads_typed_resume_entries(corpus: Corpus) -> None:
    kinds = {doc.doc_id: doc.kind for doc in corpus.resume.documents}

    assert kinds == {"acme-ml": "experience", "state-u": "education", "hack-award": "award"}
    assert corpus.profile is not None and corpus.profile.doc_id == "profile"
    assert corpus.social_platforms() == {"github"}
    assert corpus.projects.indexed_ids() == ["vision-lab", "ledger-api", "garden-bot"]


def test_effective_top_k_is_bounded_by_corpus_size(corpus: Corpus, embedder: HashingEmbedder) -> None:
    engine = RetrievalEngine(corpus, embedder)

    for limit in (1, 2, 3, 5, 10):
        outcome = asyncio.run(engine.retrieve(RetrievalQuery(source="projects", text="AI project", limit=limit)))
        assert outcome.summary.effective_top_k == min(limit, 3)
        assert outcome.summary.num_results <= outcome.summary.effective_top_k
        assert outcome.summary.requested_top_k == limit


def test_retrieval_is_deterministic(corpus: Corpus, embedder: HashingEmbedder) -> None:
    engine = RetrievalEngine(corpus, embedder)
    query = RetrievalQuery(source="resume", text="machine learning engineer", limit=3)

    first = asyncio.run(engine.retrieve(query))
    second = asyncio.run(engine.retrieve(query))

    assert [(h.document.doc_id, h.score) for h in first.documents] == [
        (h.document.doc_id, h.score) for h in second.documents
    ]


def test_profile_query_returns_whole_profile(corpus: Corpus, embedder: HashingEmbedder) -> None:
    outcome = asyncio.run(RetrievalEngine(corpus, embedder).retrieve(RetrievalQuery(source="profile")))

    assert [hit.document.doc_id for hit in outcome.documents] == ["profile"]
    assert outcome.summary.embedding_model is None
    assert outcome.summary.query_text == ""


def test_empty_query_text_is_a_retrieval_error(corpus: Corpus, embedder: HashingEmbedder) -> None:
    with pytest.raises(RetrievalError):
        asyncio.run(RetrievalEngine(corpus, embedder).retrieve(RetrievalQuery(source="projects", text="  ")))


def test_failing_source_is_isolated(corpus: Corpus) -> None:
    class _ProjectsOnlyEmbedder(HashingEmbedder):
        async def aembed_query(self, text: str) -> list[float]:
            if "school" in text:
                raise RuntimeError("embedding service unavailable")
            return self.embed_query(text)

    engine = RetrievalEngine(corpus, _ProjectsOnlyEmbedder())
    result = asyncio.run(
        engine.execute(
            [
                RetrievalQuery(source="projects", text="AI project", limit=2),
                RetrievalQuery(source="resume", text="school", limit=2),
            ]
        )
    )

    assert [summary.source for summary in result.summaries] == ["projects"]
    assert len(result.failures) == 1
    assert result.failures[0].query.source == "resume"
    assert {hit.document.source for hit in result.documents} == {"projects"}


def test_evidence_is_deduplicated_and_capped(embedder: HashingEmbedder) -> None:
    projects = [_doc(f"p{i}") for i in range(8)]
    resume = [_doc(f"r{i}", source="resume", kind="experience") for i in range(3)]
    corpus = Corpus(
        projects=CorpusShard("projects", projects, build_embedding_index(projects, embedder)),
        resume=CorpusShard("resume", resume, build_embedding_index(resume, embedder)),
    )
    engine = RetrievalEngine(corpus, embedder, RetrievalConfig(max_context_documents=6))

    result = asyncio.run(
        engine.execute(
            [
                RetrievalQuery(source="projects", text="p1", limit=8),
                RetrievalQuery(source="projects", text="p2", limit=8),
                RetrievalQuery(source="resume", text="r1", limit=3),
            ]
        )
    )

    ids = [hit.document.doc_id for hit in result.documents]
    assert len(ids) == len(set(ids)) == 6
    assert sum(1 for doc_id in ids if doc_id.startswith("r")) == 3
    assert all(set(ref.to_wire()) == {"id", "source", "kind", "title", "score"} for ref in result.doc_refs())


def test_documents_missing_from_index_are_not_ranked(tmp_path: Path, embedder: HashingEmbedder) -> None:
    (tmp_path / "projects.json").write_text('[{"id": "a", "name": "A"}, {"id": "b", "name": "B"}]', encoding="utf-8")
    write_index(build_embedding_index([_doc("a")], embedder), tmp_path / "projects.embeddings.json")
    corpus = load_corpus(tmp_path)

    outcome = asyncio.run(
        RetrievalEngine(corpus, embedder).retrieve(RetrievalQuery(source="projects", text="anything", limit=5))
    )

    assert outcome.summary.effective_top_k == 1
    assert [hit.document.doc_id for hit in outcome.documents] == ["a"]
