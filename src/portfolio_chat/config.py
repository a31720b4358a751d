"""Configuration models for the portfolio chat service."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["openai", "anthropic", "cli"]
ReasoningEffort = Literal["none", "minimal", "low", "medium", "high"]

MAX_QUERY_LIMIT = 10


class HistoryConfig(BaseModel):
    """Configures the sliding window applied to conversation history."""

    max_user_message_tokens: int = Field(default=500, ge=1)
    max_conversation_tokens: int = Field(default=8000, ge=1)
    min_recent_turns: int = Field(default=3, ge=1)
    planner_message_limit: int = Field(default=6, ge=1)


class RetrievalConfig(BaseModel):
    """Configures per-query top-K and evidence shaping."""

    default_top_k: int = Field(default=8, ge=1, le=MAX_QUERY_LIMIT)
    min_relevance_score: float | None = Field(default=None, ge=-1.0, le=1.0)
    max_context_documents: int = Field(default=12, ge=1)


class ModelConfig(BaseModel):
    """Model names and per-stage generation limits."""

    planner_model: str = "gpt-5-mini"
    answer_model: str = "gpt-5-mini"
    embedding_model: str = "text-embedding-3-large"
    planner_effort: ReasoningEffort | None = "low"
    answer_effort: ReasoningEffort | None = None
    planner_max_output_tokens: int = Field(default=1200, ge=1)
    answer_max_output_tokens: int = Field(default=2000, ge=1)
    answer_temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class PipelineConfig(BaseModel):
    """Configures one plan -> retrieve -> answer turn."""

    owner_name: str = "the portfolio owner"
    soft_timeout_seconds: float = Field(default=65.0, gt=0.0)
    max_display_items: int = Field(default=10, ge=1)
    planner_cache_size: int = Field(default=64, ge=0)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)


class BudgetConfig(BaseModel):
    """Monthly spend budget and alerting behaviour."""

    budget_usd: float = Field(default=10.0, ge=0.0)
    refuse_at_level: Literal["critical", "exceeded"] = "critical"
    alert_cooldown_seconds: float = Field(default=3600.0, ge=0.0)


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Corpus
    data_dir: Path = Path("data")

    # LLM
    llm_provider: ProviderName = "openai"
    planner_model: str = "gpt-5-mini"
    answer_model: str = "gpt-5-mini"
    embedding_model: str = "text-embedding-3-large"
    planner_effort: ReasoningEffort | None = "low"
    answer_effort: ReasoningEffort | None = None
    llm_request_timeout_seconds: float = 60.0
    cli_command: str = "claude -p --output-format text"
    use_hashing_embedder: bool = False

    # Secrets
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    secrets_dir: Path | None = None

    # Chat
    owner_name: str = "the portfolio owner"
    chat_soft_timeout_seconds: float = 65.0
    chat_default_top_k: int = 8

    # Budget
    chat_monthly_budget_usd: float = 10.0
    chat_budget_refuse_at: Literal["critical", "exceeded"] = "critical"
    cost_store_path: Path | None = None
    cost_alert_webhook_url: str = ""
    cost_alert_cooldown_seconds: float = 3600.0

    # Moderation
    input_moderation_enabled: bool = False
    input_moderation_model: str = "omni-moderation-latest"
    input_moderation_refusal_message: str = (
        "I can only answer questions about my portfolio and professional background."
    )

    # Rate limiting
    rate_limit_requests: int = 20
    rate_limit_window_seconds: float = 60.0

    # App
    log_level: str = "INFO"

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            owner_name=self.owner_name,
            soft_timeout_seconds=self.chat_soft_timeout_seconds,
            retrieval=RetrievalConfig(default_top_k=self.chat_default_top_k),
            models=ModelConfig(
                planner_model=self.planner_model,
                answer_model=self.answer_model,
                embedding_model=self.embedding_model,
                planner_effort=self.planner_effort,
                answer_effort=self.answer_effort,
            ),
        )

    def budget_config(self) -> BudgetConfig:
        return BudgetConfig(
            budget_usd=self.chat_monthly_budget_usd,
            refuse_at_level=self.chat_budget_refuse_at,
            alert_cooldown_seconds=self.cost_alert_cooldown_seconds,
        )
