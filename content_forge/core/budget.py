"""
Budget policy and spend gating.

Decides whether a prospective operation may proceed based on what the
cost ledger already holds for the current calendar month and day.

Enforcement Order:
1. Monthly budget - month total plus the estimate must stay within budget
2. Daily limit - day total plus the estimate must stay within 150% of the
   daily share, leaving slack for bursty single-session usage

Checks are advisory. Two jobs can pass can_afford concurrently and jointly
overshoot the budget; operations are human-initiated and low-dollar, so
the race is accepted.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
import logging
from typing import Callable, Optional, Tuple

from .errors import ValidationError
from content_forge.storage.models import MonthlySummary
from content_forge.storage.repository import CostLedger, to_decimal

logger = logging.getLogger(__name__)

DAILY_BUFFER = Decimal("1.5")
DAYS_PER_MONTH = 30
WARNING_PERCENT = 80
CRITICAL_PERCENT = 100


class HealthStatus(Enum):
    """Budget health levels, least to most severe."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget check."""
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class BudgetHealth:
    """Monthly budget status for dashboards."""
    status: HealthStatus
    message: str
    percentage: float


@dataclass(frozen=True)
class DailyLimitStatus:
    """Spend against the daily limit."""
    limit: Decimal
    current: Decimal
    remaining: Decimal
    is_exceeded: bool


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Calendar month containing now, as [start, end)."""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    end = (start + timedelta(days=32)).replace(day=1)
    return start, end


def day_window(now: datetime) -> Tuple[datetime, datetime]:
    """Calendar day containing now, as [start, end)."""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def budget_health(percentage: float) -> BudgetHealth:
    """Classify a budget usage percentage.

    critical at >= 100%, warning at >= 80%, healthy otherwise.
    """
    if percentage >= CRITICAL_PERCENT:
        return BudgetHealth(
            status=HealthStatus.CRITICAL,
            message="Budget exceeded! Consider optimizing usage or increasing budget.",
            percentage=percentage,
        )
    if percentage >= WARNING_PERCENT:
        return BudgetHealth(
            status=HealthStatus.WARNING,
            message="Approaching budget limit. Monitor usage closely.",
            percentage=percentage,
        )
    return BudgetHealth(
        status=HealthStatus.HEALTHY,
        message="Budget usage is within normal range.",
        percentage=percentage,
    )


class BudgetPolicy:
    """Monthly and daily spend gate backed by the cost ledger."""

    def __init__(
        self,
        ledger: CostLedger,
        monthly_budget: Decimal,
        alert_threshold: Decimal,
        daily_limit: Optional[Decimal] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the policy.

        Args:
            ledger: Ledger the spend totals are read from
            monthly_budget: Monthly spend limit
            alert_threshold: Spend that triggers a warning, at most monthly_budget
            daily_limit: Daily limit, defaults to monthly_budget / 30
            clock: Source of the current time
        """
        self.ledger = ledger
        self.monthly_budget = to_decimal(monthly_budget)
        self.alert_threshold = to_decimal(alert_threshold)
        if self.monthly_budget <= 0:
            raise ValueError("monthly_budget must be > 0")
        if self.alert_threshold > self.monthly_budget:
            raise ValueError("alert_threshold cannot exceed monthly_budget")
        if daily_limit is None:
            self.daily_limit = self.monthly_budget / DAYS_PER_MONTH
        else:
            self.daily_limit = to_decimal(daily_limit)
        self.clock = clock

    def monthly_total(self) -> Decimal:
        return self.ledger.total(*month_window(self.clock()))

    def daily_total(self) -> Decimal:
        return self.ledger.total(*day_window(self.clock()))

    def can_afford(self, estimated_cost) -> BudgetDecision:
        """Check whether an operation with the given estimate may proceed.

        Reads the ledger before the billed call is made.

        Args:
            estimated_cost: Non-negative cost estimate for the operation

        Returns:
            BudgetDecision with a human-readable reason when denied

        Raises:
            ValidationError: If the estimate is negative
        """
        estimate = to_decimal(estimated_cost)
        if estimate < 0:
            raise ValidationError(f"estimated_cost must be >= 0, got {estimate}")

        monthly_total = self.monthly_total()
        if monthly_total + estimate > self.monthly_budget:
            return BudgetDecision(
                allowed=False,
                reason=(
                    f"Monthly budget exceeded. Used: "
                    f"${monthly_total:.2f}/${self.monthly_budget:.2f}"
                ),
            )

        daily_total = self.daily_total()
        if daily_total + estimate > self.daily_limit * DAILY_BUFFER:
            return BudgetDecision(
                allowed=False,
                reason=f"Daily limit exceeded. Used: ${daily_total:.2f} today",
            )

        return BudgetDecision(allowed=True)

    def monthly_summary(self) -> MonthlySummary:
        """Summary of the current calendar month against the budget."""
        start, end = month_window(self.clock())
        return self.ledger.summary(
            start,
            end,
            budget_limit=self.monthly_budget,
            alert_threshold=self.alert_threshold,
        )

    def health(self, summary: Optional[MonthlySummary] = None) -> BudgetHealth:
        """Budget health derived from a monthly summary."""
        summary = summary or self.monthly_summary()
        return budget_health(summary.budget_used_percent)

    def daily_status(self) -> DailyLimitStatus:
        current = self.daily_total()
        return DailyLimitStatus(
            limit=self.daily_limit,
            current=current,
            remaining=max(Decimal("0"), self.daily_limit - current),
            is_exceeded=current >= self.daily_limit,
        )

    def estimated_remaining_posts(self, avg_cost_per_post=Decimal("0.10")) -> int:
        """How many average posts the remaining monthly budget covers."""
        avg = to_decimal(avg_cost_per_post)
        if avg <= 0:
            raise ValidationError("avg_cost_per_post must be > 0")
        remaining = self.monthly_summary().budget_remaining
        return int(remaining // avg)

    def check_alerts(self) -> BudgetHealth:
        """Log when monthly spend crosses the alert threshold or the budget."""
        summary = self.monthly_summary()
        total = summary.total_cost
        if total >= self.monthly_budget:
            logger.error("Budget exceeded: $%.2f spent this month", total)
        elif total >= self.alert_threshold:
            logger.warning(
                "Cost alert: $%.2f spent this month (%.0f%% of budget)",
                total,
                summary.budget_used_percent,
            )
        return self.health(summary)
