"""Command-line entry point: serve the API, build embedding indexes, show spend."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from portfolio_chat.api.main import create_app
from portfolio_chat.config import Settings
from portfolio_chat.context import build_context, build_cost_store, build_embedder
from portfolio_chat.cost.budget import CostTracker
from portfolio_chat.retrieval.corpus import load_corpus
from portfolio_chat.retrieval.index import build_embedding_index, write_index
from portfolio_chat.secrets import SecretsResolver

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="portfolio-chat", description=__doc__)
    parser.add_argument("--data-dir", type=Path, default=None, help="Corpus directory (overrides DATA_DIR)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    build = subparsers.add_parser("build-index", help="Embed projects and resume entries")
    build.add_argument(
        "--source",
        choices=["projects", "resume"],
        action="append",
        help="Source to index (repeatable, default: both)",
    )

    subparsers.add_parser("cost", help="Print this month's spend and budget level")
    return parser


def main(argv: list[str] | None = None, *, settings: Settings | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or Settings()
    if args.data_dir is not None:
        settings = settings.model_copy(update={"data_dir": args.data_dir})
    configure_logging(settings.log_level)

    if args.command == "serve":
        return _serve(settings, args.host, args.port)
    if args.command == "build-index":
        return _build_index(settings, args.source or ["projects", "resume"])
    return _cost(settings)


def _serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    uvicorn.run(create_app(build_context(settings)), host=host, port=port)
    return 0


def _build_index(settings: Settings, sources: list[str]) -> int:
    corpus = load_corpus(settings.data_dir)
    embedder = build_embedder(settings, SecretsResolver(settings))
    for source in sources:
        shard = corpus.shard(source)  # type: ignore[arg-type]
        if not shard.documents:
            logger.warning("index.skipped source=%s reason=no_documents", source)
            continue
        index = build_embedding_index(shard.documents, embedder)
        path = Path(settings.data_dir) / f"{source}.embeddings.json"
        write_index(index, path)
        logger.info(
            "index.written source=%s entries=%d model=%s path=%s",
            source,
            len(index),
            embedder.model_name,
            path,
        )
    return 0


def _cost(settings: Settings) -> int:
    tracker = CostTracker(build_cost_store(settings), settings.budget_config())
    json.dump(tracker.current_state().to_wire(), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
