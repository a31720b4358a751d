"""Query-time retrieval over the fixed corpus."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field

from portfolio_chat.config import RetrievalConfig
from portfolio_chat.errors import RetrievalError
from portfolio_chat.retrieval.corpus import Corpus
from portfolio_chat.retrieval.embedder import Embedder
from portfolio_chat.schemas import RetrievalQuery, RetrievalSummary, RetrievedDocRef
from portfolio_chat.types import ScoredDocument

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetrievalOutcome:
    query: RetrievalQuery
    documents: list[ScoredDocument]
    summary: RetrievalSummary


@dataclass(slots=True)
class RetrievalFailure:
    query: RetrievalQuery
    message: str


@dataclass(slots=True)
class RetrievalResult:
    """All outcomes of one plan, with de-duplicated evidence."""

    outcomes: list[RetrievalOutcome] = field(default_factory=list)
    failures: list[RetrievalFailure] = field(default_factory=list)
    documents: list[ScoredDocument] = field(default_factory=list)

    @property
    def summaries(self) -> list[RetrievalSummary]:
        return [outcome.summary for outcome in self.outcomes]

    def doc_refs(self) -> list[RetrievedDocRef]:
        return [
            RetrievedDocRef(
                id=hit.document.doc_id,
                source=hit.document.source,
                kind=hit.document.kind,
                title=hit.document.title,
                score=round(hit.score, 4),
            )
            for hit in self.documents
        ]

    def ids_by_kind(self, kind: str) -> set[str]:
        return {hit.document.doc_id for hit in self.documents if hit.document.kind == kind}


class RetrievalEngine:
    """Ranks corpus documents by cosine similarity to an embedded query.

    Queries for different sources of one plan run concurrently; a failing
    query is logged and left out of the result.
    """

    def __init__(
        self,
        corpus: Corpus,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.corpus = corpus
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def retrieve(self, query: RetrievalQuery) -> RetrievalOutcome:
        requested = query.limit or self.config.default_top_k

        if query.source == "profile":
            profile = self.corpus.profile
            documents = [ScoredDocument(document=profile, score=1.0, rank=1)] if profile else []
            summary = RetrievalSummary(
                source="profile",
                query_text="",
                requested_top_k=requested,
                effective_top_k=min(requested, len(documents)),
                num_results=len(documents),
                embedding_model=None,
            )
            return RetrievalOutcome(query=query, documents=documents, summary=summary)

        text = (query.text or "").strip()
        if not text:
            raise RetrievalError(f"Query for {query.source} has no text")

        shard = self.corpus.shard(query.source)
        candidates = shard.indexed_ids()
        effective = min(requested, len(candidates))

        hits: list[ScoredDocument] = []
        if effective > 0 and shard.index is not None:
            query_vector = await self.embedder.aembed_query(text)
            ranked = shard.index.search(query_vector, effective, candidates=candidates)
            for doc_id, score in ranked:
                if self.config.min_relevance_score is not None and score < self.config.min_relevance_score:
                    continue
                document = shard.get(doc_id)
                if document is not None:
                    hits.append(ScoredDocument(document=document, score=score, rank=len(hits) + 1))

        summary = RetrievalSummary(
            source=query.source,
            query_text=text,
            requested_top_k=requested,
            effective_top_k=effective,
            num_results=len(hits),
            embedding_model=self.embedder.model_name,
        )
        return RetrievalOutcome(query=query, documents=hits, summary=summary)

    async def execute(self, queries: list[RetrievalQuery]) -> RetrievalResult:
        results = await asyncio.gather(
            *(self.retrieve(query) for query in queries),
            return_exceptions=True,
        )

        result = RetrievalResult()
        for query, outcome in zip(queries, results, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    # Cancellation and interpreter exits are not per-source failures.
                    raise outcome
                logger.warning(
                    "retrieval.query_failed source=%s error=%s", query.source, outcome
                )
                result.failures.append(RetrievalFailure(query=query, message=str(outcome)))
                continue
            result.outcomes.append(outcome)

        result.documents = _merge_documents(result.outcomes, self.config.max_context_documents)
        return result


def _merge_documents(outcomes: list[RetrievalOutcome], limit: int) -> list[ScoredDocument]:
    """First occurrence of each id wins; trim the largest source bucket over the cap."""
    buckets: OrderedDict[str, list[ScoredDocument]] = OrderedDict()
    seen: set[str] = set()
    for outcome in outcomes:
        for hit in outcome.documents:
            if hit.document.doc_id in seen:
                continue
            seen.add(hit.document.doc_id)
            buckets.setdefault(hit.document.source, []).append(hit)

    while sum(len(bucket) for bucket in buckets.values()) > limit:
        largest = max(buckets.values(), key=len)
        largest.pop()

    return [hit for bucket in buckets.values() for hit in bucket]
