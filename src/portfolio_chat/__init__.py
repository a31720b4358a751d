"""Portfolio chat package."""

from .config import BudgetConfig, PipelineConfig, Settings

__all__ = ["BudgetConfig", "PipelineConfig", "Settings"]
