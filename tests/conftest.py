import json
from pathlib import Path
from typing import Any

import pytest

from portfolio_chat.llm.base import LlmProviderClient, LlmStructuredPrompt, LlmStructuredResult, SnapshotCallback
from portfolio_chat.retrieval.corpus import Corpus, load_corpus, project_document, resume_document
from portfolio_chat.retrieval.embedder import HashingEmbedder
from portfolio_chat.retrieval.index import build_embedding_index, write_index
from portfolio_chat.types import TokenUsage

PROJECTS = [
    {
        "id": "vision-lab",
        "name": "Vision Lab",
        "oneLiner": "AI project that tags photos with a fine-tuned vision model",
        "techStack": ["PyTorch", "FastAPI"],
        "readme": "# Vision Lab\n" + "Training notes. " * 200,
    },
    {
        "id": "ledger-api",
        "name": "Ledger API",
        "description": "Double-entry accounting REST service",
        "techStack": ["Go", "Postgres"],
    },
    {
        "id": "garden-bot",
        "name": "Garden Bot",
        "description": "Raspberry Pi irrigation controller",
        "techStack": ["Python"],
    },
]

RESUME = [
    {"id": "acme-ml", "type": "experience", "title": "ML Engineer", "company": "Acme", "startDate": "2021"},
    {"id": "state-u", "type": "education", "institution": "State University", "degree": "BSc Computer Science"},
    {"id": "hack-award", "type": "award", "title": "Hackathon winner"},
]

PROFILE = {
    "fullName": "Sam Rivera",
    "headline": "ML engineer building practical AI tools",
    "location": "Lisbon",
    "about": ["I build AI products.", "I like gardens."],
    "socialLinks": [{"platform": "GitHub", "url": "https://github.com/sam"}],
}


class ScriptedClient(LlmProviderClient):
    """Provider fake: returns a fixed plan and streams a fixed answer."""

    provider = "scripted"

    def __init__(
        self,
        plan: Any = None,
        answer: Any = None,
        *,
        plan_error: Exception | None = None,
        answer_error: Exception | None = None,
        usage: TokenUsage | None = None,
        chunk_size: int = 7,
    ) -> None:
        self.plan = plan if plan is not None else {"thoughts": [], "queries": [], "topic": "", "useProfileContext": False}
        self.answer = answer if answer is not None else {"message": "Hello!", "thoughts": [], "uiHints": {}}
        self.plan_error = plan_error
        self.answer_error = answer_error
        self.usage = usage
        self.chunk_size = chunk_size
        self.prompts: list[LlmStructuredPrompt] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def create_structured_json(self, prompt: LlmStructuredPrompt) -> LlmStructuredResult:
        self.prompts.append(prompt)
        if self.plan_error is not None:
            raise self.plan_error
        raw = self.plan if isinstance(self.plan, str) else json.dumps(self.plan)
        return LlmStructuredResult(raw_text=raw, structured=None, usage=self.usage)

    async def stream_structured_json(
        self,
        prompt: LlmStructuredPrompt,
        on_snapshot: SnapshotCallback,
    ) -> LlmStructuredResult:
        self.prompts.append(prompt)
        if self.answer_error is not None:
            raise self.answer_error
        raw = self.answer if isinstance(self.answer, str) else json.dumps(self.answer)
        for end in range(self.chunk_size, len(raw) + self.chunk_size, self.chunk_size):
            on_snapshot(raw[:end])
        return LlmStructuredResult(raw_text=raw, structured=None, usage=self.usage)


@pytest.fixture
def scripted_client() -> type[ScriptedClient]:
    return ScriptedClient


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def corpus_dir(tmp_path: Path, embedder: HashingEmbedder) -> Path:
    (tmp_path / "projects.json").write_text(json.dumps({"projects": PROJECTS}), encoding="utf-8")
    (tmp_path / "resume.json").write_text(json.dumps({"entries": RESUME}), encoding="utf-8")
    (tmp_path / "profile.json").write_text(json.dumps(PROFILE), encoding="utf-8")
    write_index(
        build_embedding_index([project_document(p) for p in PROJECTS], embedder),
        tmp_path / "projects.embeddings.json",
    )
    write_index(
        build_embedding_index([resume_document(r) for r in RESUME], embedder),
        tmp_path / "resume.embeddings.json",
    )
    return tmp_path


@pytest.fixture
def corpus(corpus_dir: Path) -> Corpus:
    return load_corpus(corpus_dir)
