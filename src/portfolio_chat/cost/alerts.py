"""Budget alert delivery."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CostAlert:
    level: str
    month_key: str
    spend_usd: float
    budget_usd: float
    percent_used: float
    turn_count: int


class AlertSink(Protocol):
    def send(self, alert: CostAlert) -> None:
        """Deliver one alert; may raise on delivery failure."""


class LoggingAlertSink:
    """Writes alerts to the service log."""

    def send(self, alert: CostAlert) -> None:
        logger.warning(
            "cost.alert level=%s month=%s spend_usd=%.4f budget_usd=%.2f percent=%.1f turns=%d",
            alert.level,
            alert.month_key,
            alert.spend_usd,
            alert.budget_usd,
            alert.percent_used,
            alert.turn_count,
        )


class WebhookAlertSink:
    """Posts alerts as JSON to an HTTP endpoint."""

    def __init__(self, url: str, *, timeout_seconds: float = 5.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def send(self, alert: CostAlert) -> None:
        response = self._client.post(
            self.url,
            json={"subject": f"Chat runtime cost {alert.level}", **asdict(alert)},
        )
        response.raise_for_status()
