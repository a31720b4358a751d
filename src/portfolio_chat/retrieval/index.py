"""Immutable embedding index with cosine ranking, plus build/persist helpers."""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from math import sqrt
from pathlib import Path
from typing import Any

from portfolio_chat.retrieval.embedder import Embedder
from portfolio_chat.types import CorpusDocument

SCHEMA_VERSION = 1


@dataclass(slots=True, frozen=True)
class EmbeddingIndexMeta:
    schema_version: int
    build_id: str
    source_hash: str
    model: str | None = None


@dataclass(slots=True, frozen=True)
class EmbeddingEntry:
    doc_id: str
    vector: tuple[float, ...]


class EmbeddingIndex:
    """Read-only mapping from document id to vector, in insertion order.

    Safe for concurrent readers: nothing mutates it after construction.
    """

    def __init__(self, entries: Iterable[EmbeddingEntry], meta: EmbeddingIndexMeta) -> None:
        self._entries = tuple(entries)
        self.meta = meta
        self._positions: dict[str, int] = {}
        dimension: int | None = None
        for position, entry in enumerate(self._entries):
            if entry.doc_id in self._positions:
                raise ValueError(f"Duplicate embedding id: {entry.doc_id}")
            if dimension is None:
                dimension = len(entry.vector)
            elif len(entry.vector) != dimension:
                raise ValueError(
                    f"Embedding {entry.doc_id} has dimension {len(entry.vector)}, expected {dimension}"
                )
            self._positions[entry.doc_id] = position
        self.dimension = dimension or 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._positions

    @property
    def ids(self) -> list[str]:
        return [entry.doc_id for entry in self._entries]

    def vector(self, doc_id: str) -> tuple[float, ...]:
        return self._entries[self._positions[doc_id]].vector

    def search(
        self,
        query_vector: list[float],
        top_k: int,
        *,
        candidates: Sequence[str] | None = None,
    ) -> list[tuple[str, float]]:
        """Top-k `(doc_id, cosine)` pairs, best first.

        Equal scores keep the order of `candidates` when given (callers pass
        corpus order), else index insertion order. Candidates missing from the
        index are skipped.
        """
        if top_k <= 0:
            return []
        order = self.ids if candidates is None else [doc_id for doc_id in candidates if doc_id in self._positions]
        scored = [(doc_id, cosine_similarity(query_vector, self.vector(doc_id))) for doc_id in order]
        # sorted() is stable.
        ranked = sorted(scored, key=lambda item: item[1], reverse=True)
        return ranked[:top_k]

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": {
                "schemaVersion": self.meta.schema_version,
                "buildId": self.meta.build_id,
                "sourceHash": self.meta.source_hash,
                "model": self.meta.model,
            },
            "entries": [{"id": e.doc_id, "vector": list(e.vector)} for e in self._entries],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EmbeddingIndex":
        meta = payload.get("meta") or {}
        schema_version = int(meta.get("schemaVersion", SCHEMA_VERSION))
        if schema_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported embedding index schema version: {schema_version}")
        entries = [
            EmbeddingEntry(doc_id=str(item["id"]), vector=tuple(float(v) for v in item["vector"]))
            for item in payload.get("entries", [])
        ]
        return cls(
            entries,
            EmbeddingIndexMeta(
                schema_version=schema_version,
                build_id=str(meta.get("buildId", "")),
                source_hash=str(meta.get("sourceHash", "")),
                model=meta.get("model"),
            ),
        )


def build_embedding_index(documents: list[CorpusDocument], embedder: Embedder) -> EmbeddingIndex:
    vectors = embedder.embed_documents([doc.text for doc in documents])
    entries = [
        EmbeddingEntry(doc_id=doc.doc_id, vector=tuple(vector))
        for doc, vector in zip(documents, vectors, strict=True)
    ]
    meta = EmbeddingIndexMeta(
        schema_version=SCHEMA_VERSION,
        build_id=uuid.uuid4().hex,
        source_hash=source_hash(documents),
        model=embedder.model_name,
    )
    return EmbeddingIndex(entries, meta)


def source_hash(documents: list[CorpusDocument]) -> str:
    digest = hashlib.sha256()
    for doc in documents:
        digest.update(doc.doc_id.encode("utf-8"))
        digest.update(b"\0")
        digest.update(doc.text.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


def write_index(index: EmbeddingIndex, path: str | Path) -> None:
    Path(path).write_text(json.dumps(index.to_dict()), encoding="utf-8")


def load_index(path: str | Path) -> EmbeddingIndex:
    return EmbeddingIndex.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


def cosine_similarity(a: list[float] | tuple[float, ...], b: list[float] | tuple[float, ...]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
