"""Monthly spend tracking, budget levels and pre-turn refusal."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from portfolio_chat.config import BudgetConfig
from portfolio_chat.cost.alerts import AlertSink, CostAlert
from portfolio_chat.cost.store import CostCounterStore
from portfolio_chat.errors import BudgetExceededError
from portfolio_chat.stream.events import WireModel

logger = logging.getLogger(__name__)

WARNING_THRESHOLD_PERCENT = 80.0
CRITICAL_THRESHOLD_PERCENT = 95.0
EXCEEDED_THRESHOLD_PERCENT = 100.0


class CostLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"

    @property
    def severity(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [CostLevel.OK, CostLevel.WARNING, CostLevel.CRITICAL, CostLevel.EXCEEDED]


class CostState(WireModel):
    month_key: str
    spend_usd: float
    turn_count: int
    budget_usd: float
    percent_used: float
    remaining_usd: float
    level: CostLevel
    estimated_turns_remaining: int
    updated_at: str


def month_key(now: datetime) -> str:
    now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def percent_used(spend_usd: float, budget_usd: float) -> float:
    if budget_usd <= 0:
        return 0.0
    return (spend_usd / budget_usd) * 100.0


def classify_level(spend_usd: float, budget_usd: float) -> CostLevel:
    """Budget level as a pure function of spend and budget."""
    percent = percent_used(spend_usd, budget_usd)
    if percent >= EXCEEDED_THRESHOLD_PERCENT:
        return CostLevel.EXCEEDED
    if percent >= CRITICAL_THRESHOLD_PERCENT:
        return CostLevel.CRITICAL
    if percent >= WARNING_THRESHOLD_PERCENT:
        return CostLevel.WARNING
    return CostLevel.OK


def evaluate_cost_state(
    spend_usd: float,
    turn_count: int,
    budget_usd: float,
    now: datetime,
) -> CostState:
    remaining = max(0.0, budget_usd - spend_usd) if budget_usd > 0 else 0.0
    average_per_turn = spend_usd / turn_count if turn_count > 0 else 0.0
    turns_remaining = math.floor(remaining / average_per_turn) if average_per_turn > 0 else 0
    return CostState(
        month_key=month_key(now),
        spend_usd=spend_usd,
        turn_count=turn_count,
        budget_usd=budget_usd,
        percent_used=percent_used(spend_usd, budget_usd),
        remaining_usd=remaining,
        level=classify_level(spend_usd, budget_usd),
        estimated_turns_remaining=turns_remaining,
        updated_at=now.astimezone(timezone.utc).isoformat(),
    )


class CostTracker:
    """Shared monthly counter with level evaluation and rate-limited alerts.

    The level is recomputed from spend on every read; nothing stores it.
    """

    def __init__(
        self,
        store: CostCounterStore,
        config: BudgetConfig | None = None,
        *,
        alert_sink: AlertSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config or BudgetConfig()
        self.alert_sink = alert_sink
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._alert_lock = threading.Lock()
        self._last_alert_at: dict[tuple[str, CostLevel], datetime] = {}

    @property
    def refuse_level(self) -> CostLevel:
        return CostLevel(self.config.refuse_at_level)

    def current_state(self) -> CostState:
        now = self._clock()
        key = month_key(now)
        try:
            snapshot = self.store.read(key)
        except Exception as exc:
            logger.warning("cost.state_read_failed month=%s error=%s", key, exc)
            return evaluate_cost_state(0.0, 0, self.config.budget_usd, now)
        return evaluate_cost_state(
            snapshot.spend_usd, snapshot.turn_count, self.config.budget_usd, now
        )

    def check_turn_allowed(self) -> CostState:
        """Raise `BudgetExceededError` when the month is at or past the refusal level."""
        state = self.current_state()
        if state.level.severity >= self.refuse_level.severity:
            logger.warning(
                "cost.turn_refused level=%s spend_usd=%.4f budget_usd=%.2f",
                state.level.value,
                state.spend_usd,
                state.budget_usd,
            )
            raise BudgetExceededError(
                "The monthly chat budget has been reached. Please try again later."
            )
        return state

    def record_turn(self, cost_usd: float | None) -> CostState:
        now = self._clock()
        key = month_key(now)
        snapshot = self.store.increment(key, cost_usd or 0.0, 1, now=now)
        state = evaluate_cost_state(
            snapshot.spend_usd, snapshot.turn_count, self.config.budget_usd, now
        )
        if state.level is not CostLevel.OK:
            self._maybe_alert(state, now)
        return state

    def _maybe_alert(self, state: CostState, now: datetime) -> None:
        if self.alert_sink is None:
            return
        alert_key = (state.month_key, state.level)
        with self._alert_lock:
            last = self._last_alert_at.get(alert_key)
            if last is not None and (now - last).total_seconds() < self.config.alert_cooldown_seconds:
                return
            self._last_alert_at[alert_key] = now
        try:
            self.alert_sink.send(
                CostAlert(
                    level=state.level.value,
                    month_key=state.month_key,
                    spend_usd=state.spend_usd,
                    budget_usd=state.budget_usd,
                    percent_used=state.percent_used,
                    turn_count=state.turn_count,
                )
            )
        except Exception as exc:
            logger.warning("cost.alert_failed level=%s error=%s", state.level.value, exc)
