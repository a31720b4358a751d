"""Loads the projects, resume and profile corpus with its embedding indexes."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from portfolio_chat.retrieval.index import EmbeddingIndex, load_index
from portfolio_chat.types import CorpusDocument, RetrievalSource

logger = logging.getLogger(__name__)

RESUME_KINDS = ("experience", "education", "award", "skill")


@dataclass(slots=True)
class CorpusShard:
    """Documents of one source, in file order, plus their index."""

    source: RetrievalSource
    documents: list[CorpusDocument]
    index: EmbeddingIndex | None = None
    _by_id: dict[str, CorpusDocument] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self._by_id = {doc.doc_id: doc for doc in self.documents}

    def get(self, doc_id: str) -> CorpusDocument | None:
        return self._by_id.get(doc_id)

    def indexed_ids(self) -> list[str]:
        """Documents that can be ranked: present in both corpus and index."""
        if self.index is None:
            return []
        return [doc.doc_id for doc in self.documents if doc.doc_id in self.index]


@dataclass(slots=True)
class Corpus:
    projects: CorpusShard
    resume: CorpusShard
    profile: CorpusDocument | None = None

    def shard(self, source: RetrievalSource) -> CorpusShard:
        if source == "projects":
            return self.projects
        if source == "resume":
            return self.resume
        raise KeyError(f"Source has no searchable shard: {source}")

    def social_platforms(self) -> set[str]:
        if self.profile is None:
            return set()
        links = self.profile.data.get("socialLinks") or []
        return {
            str(link.get("platform", "")).strip().lower()
            for link in links
            if isinstance(link, dict) and link.get("platform")
        }


def load_corpus(data_dir: str | Path) -> Corpus:
    """Read `projects.json`, `resume.json`, `profile.json` and `*.embeddings.json`."""
    root = Path(data_dir)
    projects = [project_document(r) for r in _read_records(root / "projects.json", "projects")]
    resume = [resume_document(r) for r in _read_records(root / "resume.json", "entries")]

    profile = None
    profile_path = root / "profile.json"
    if profile_path.exists():
        profile = profile_document(json.loads(profile_path.read_text(encoding="utf-8")))

    corpus = Corpus(
        projects=CorpusShard("projects", projects, _maybe_index(root / "projects.embeddings.json")),
        resume=CorpusShard("resume", resume, _maybe_index(root / "resume.embeddings.json")),
        profile=profile,
    )
    logger.info(
        "corpus.loaded projects=%d resume=%d profile=%s",
        len(projects),
        len(resume),
        profile is not None,
    )
    return corpus


def project_document(record: dict[str, Any]) -> CorpusDocument:
    name = str(record.get("name") or record.get("id"))
    lines = [
        name,
        str(record.get("oneLiner", "")),
        str(record.get("description", "")),
        _joined("Tech", record.get("techStack")),
        _joined("Languages", record.get("languages")),
        _joined("Tags", record.get("tags")),
        *[str(b) for b in record.get("bullets") or []],
    ]
    return CorpusDocument(
        doc_id=str(record["id"]),
        source="projects",
        kind="project",
        title=name,
        text=_compact(lines),
        data=record,
    )


def resume_document(record: dict[str, Any]) -> CorpusDocument:
    kind = str(record.get("type") or "experience")
    if kind not in RESUME_KINDS:
        kind = "experience"

    if kind == "experience":
        title = f"{record.get('title', '')} @ {record.get('company', '')}".strip(" @")
    elif kind == "education":
        title = " - ".join(
            str(part) for part in (record.get("institution"), record.get("degree")) if part
        )
    elif kind == "award":
        title = str(record.get("title", ""))
    else:
        title = str(record.get("name", ""))

    dates = " - ".join(
        str(part) for part in (record.get("startDate"), record.get("endDate") or record.get("date")) if part
    )
    lines = [
        title or str(record["id"]),
        dates,
        str(record.get("location", "") or ""),
        str(record.get("summary", "") or ""),
        *[str(b) for b in record.get("bullets") or []],
        _joined("Skills", record.get("skills")),
    ]
    return CorpusDocument(
        doc_id=str(record["id"]),
        source="resume",
        kind=kind,
        title=title or str(record["id"]),
        text=_compact(lines),
        data=record,
    )


def profile_document(record: dict[str, Any]) -> CorpusDocument:
    about = record.get("about", "")
    if isinstance(about, list):
        about = " ".join(str(a) for a in about)
    lines = [
        str(record.get("fullName", "")),
        str(record.get("headline", "")),
        str(record.get("location", "") or ""),
        str(record.get("currentRole", "") or ""),
        str(about),
        _joined("Top skills", record.get("topSkills")),
    ]
    return CorpusDocument(
        doc_id="profile",
        source="profile",
        kind="profile",
        title=str(record.get("fullName", "Profile")),
        text=_compact(lines),
        data=record,
    )


def _read_records(path: Path, key: str) -> list[dict[str, Any]]:
    if not path.exists():
        logger.warning("corpus.file_missing path=%s", path)
        return []
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get(key, [])
    return [item for item in payload if isinstance(item, dict) and item.get("id")]


def _maybe_index(path: Path) -> EmbeddingIndex | None:
    if not path.exists():
        logger.warning("corpus.index_missing path=%s", path)
        return None
    return load_index(path)


def _joined(label: str, values: Any) -> str:
    if not values:
        return ""
    return f"{label}: {', '.join(str(v) for v in values)}"


def _compact(lines: list[str]) -> str:
    return "\n".join(line.strip() for line in lines if line and line.strip())
