"""Application context built once at the process entry point."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from portfolio_chat.api.ratelimit import FixedWindowRateLimiter
from portfolio_chat.config import Settings
from portfolio_chat.cost.alerts import AlertSink, LoggingAlertSink, WebhookAlertSink
from portfolio_chat.cost.budget import CostTracker
from portfolio_chat.cost.store import CostCounterStore, InMemoryCostStore, SqliteCostStore
from portfolio_chat.llm.base import LlmProviderClient
from portfolio_chat.llm.cli_client import CliStructuredClient
from portfolio_chat.llm.langchain_client import anthropic_client, openai_client
from portfolio_chat.llm.registry import ProviderRegistry
from portfolio_chat.obs.tracing import TurnTraceStore
from portfolio_chat.pipeline.answer import AnswerStage
from portfolio_chat.pipeline.moderation import ModerationClient, ModerationGate, OpenAIModerationClient
from portfolio_chat.pipeline.planner import PlannerStage
from portfolio_chat.pipeline.runtime import ChatPipeline
from portfolio_chat.pipeline.service import ChatService
from portfolio_chat.retrieval.corpus import Corpus, load_corpus
from portfolio_chat.retrieval.embedder import Embedder, HashingEmbedder, OpenAIEmbedder
from portfolio_chat.retrieval.engine import RetrievalEngine
from portfolio_chat.secrets import SecretsResolver

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    settings: Settings
    secrets: SecretsResolver
    corpus: Corpus
    embedder: Embedder
    retrieval: RetrievalEngine
    providers: ProviderRegistry
    pipeline: ChatPipeline
    service: ChatService
    cost_tracker: CostTracker
    trace_store: TurnTraceStore
    rate_limiter: FixedWindowRateLimiter | None


def build_context(
    settings: Settings,
    *,
    corpus: Corpus | None = None,
    embedder: Embedder | None = None,
    provider_client: LlmProviderClient | None = None,
    cost_store: CostCounterStore | None = None,
    moderation_client: ModerationClient | None = None,
) -> AppContext:
    """Wire every long-lived collaborator from settings.

    Keyword overrides replace the corresponding collaborator, which is how
    tests swap in fakes without touching the environment.
    """
    secrets = SecretsResolver(settings)
    corpus = corpus if corpus is not None else load_corpus(settings.data_dir)
    embedder = embedder or build_embedder(settings, secrets)
    _warn_on_model_mismatch(corpus, embedder)

    pipeline_config = settings.pipeline_config()
    providers = ProviderRegistry(default=settings.llm_provider)
    providers.register(
        settings.llm_provider,
        provider_client or build_provider_client(settings, secrets),
    )
    client = providers.get()

    retrieval = RetrievalEngine(corpus, embedder, pipeline_config.retrieval)
    pipeline = ChatPipeline(
        planner=PlannerStage(client, pipeline_config),
        retrieval=retrieval,
        answer=AnswerStage(client, pipeline_config),
        corpus=corpus,
        config=pipeline_config,
    )

    cost_tracker = CostTracker(
        cost_store or build_cost_store(settings),
        settings.budget_config(),
        alert_sink=build_alert_sink(settings),
    )
    trace_store = TurnTraceStore()
    rate_limiter = (
        FixedWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
        if settings.rate_limit_requests > 0
        else None
    )
    service = ChatService(
        pipeline,
        cost_tracker=cost_tracker,
        trace_store=trace_store,
        rate_limiter=rate_limiter,
        moderation=build_moderation_gate(settings, secrets, moderation_client),
    )
    logger.info(
        "context.ready provider=%s embedder=%s budget_usd=%.2f",
        settings.llm_provider,
        embedder.model_name,
        settings.chat_monthly_budget_usd,
    )
    return AppContext(
        settings=settings,
        secrets=secrets,
        corpus=corpus,
        embedder=embedder,
        retrieval=retrieval,
        providers=providers,
        pipeline=pipeline,
        service=service,
        cost_tracker=cost_tracker,
        trace_store=trace_store,
        rate_limiter=rate_limiter,
    )


def build_provider_client(settings: Settings, secrets: SecretsResolver) -> LlmProviderClient:
    if settings.llm_provider == "openai":
        return openai_client(
            api_key=secrets.get("OPENAI_API_KEY"),
            timeout_seconds=settings.llm_request_timeout_seconds,
        )
    if settings.llm_provider == "anthropic":
        return anthropic_client(
            api_key=secrets.get("ANTHROPIC_API_KEY"),
            timeout_seconds=settings.llm_request_timeout_seconds,
        )
    return CliStructuredClient(settings.cli_command)


def build_embedder(settings: Settings, secrets: SecretsResolver) -> Embedder:
    if settings.use_hashing_embedder:
        return HashingEmbedder()
    api_key = secrets.get("OPENAI_API_KEY")
    if not api_key:
        logger.warning("context.embedder_fallback reason=missing_openai_key")
        return HashingEmbedder()
    return OpenAIEmbedder(model=settings.embedding_model, api_key=api_key)


def build_moderation_gate(
    settings: Settings,
    secrets: SecretsResolver,
    client: ModerationClient | None = None,
) -> ModerationGate | None:
    if not settings.input_moderation_enabled:
        return None
    if client is None:
        client = OpenAIModerationClient(
            api_key=secrets.get("OPENAI_API_KEY"),
            model=settings.input_moderation_model,
        )
    return ModerationGate(client, refusal_message=settings.input_moderation_refusal_message)


def build_cost_store(settings: Settings) -> CostCounterStore:
    if settings.cost_store_path is None:
        return InMemoryCostStore()
    return SqliteCostStore(settings.cost_store_path)


def build_alert_sink(settings: Settings) -> AlertSink:
    if settings.cost_alert_webhook_url:
        return WebhookAlertSink(settings.cost_alert_webhook_url)
    return LoggingAlertSink()


def _warn_on_model_mismatch(corpus: Corpus, embedder: Embedder) -> None:
    for shard in (corpus.projects, corpus.resume):
        if shard.index is not None and shard.index.meta.model not in (None, embedder.model_name):
            logger.warning(
                "context.embedding_model_mismatch source=%s index_model=%s embedder=%s",
                shard.source,
                shard.index.meta.model,
                embedder.model_name,
            )
