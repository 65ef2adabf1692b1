"""
Data models for storage layer.

Defines ledger entries, derived summaries, artifacts and processing logs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class Service(Enum):
    """Billable provider capabilities tracked by the ledger."""
    TEXT_GEN = "text-gen"
    IMAGE_GEN = "image-gen"
    TRANSCRIPTION = "transcription"
    SEARCH = "search"


@dataclass(frozen=True)
class CostEntry:
    """Immutable record of one priced provider operation.

    Entries form an append-only ledger. Once written they are never
    modified; corrections are made with compensating entries.
    """
    service: Service
    operation: str
    cost: Decimal
    timestamp: datetime
    tokens_used: Optional[int] = None
    related_job_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


@dataclass(frozen=True)
class ServiceCost:
    """Spend and call count for one service."""
    service: Service
    cost: Decimal
    call_count: int


@dataclass(frozen=True)
class DailyCost:
    """Spend for one calendar day."""
    date: date
    cost: Decimal


@dataclass(frozen=True)
class OperationCost:
    """Aggregated spend for one operation label."""
    operation: str
    count: int
    total_cost: Decimal
    avg_cost: Decimal
    total_tokens: int


@dataclass(frozen=True)
class MonthlySummary:
    """Spend derived from ledger entries within a window.

    Never stored; recomputed from CostEntry rows on demand.
    """
    total_cost: Decimal
    by_service: List[ServiceCost]
    by_day: List[DailyCost]
    budget_limit: Decimal
    budget_used_percent: float
    budget_remaining: Decimal
    alert_threshold: Optional[Decimal] = None

    @property
    def is_near_budget(self) -> bool:
        """True once spend reached the alert threshold."""
        if self.alert_threshold is None:
            return False
        return self.total_cost >= self.alert_threshold

    @property
    def is_over_budget(self) -> bool:
        """True once spend reached the budget limit."""
        return self.budget_limit > 0 and self.total_cost >= self.budget_limit


class ArtifactStatus(Enum):
    """Lifecycle of a generated post."""
    DRAFT = "draft"
    COPIED = "copied"
    POSTED = "posted"


@dataclass
class Artifact:
    """A generated post and its optional image."""
    id: int
    content: str
    status: str
    ai_cost: Decimal
    created_at: datetime
    updated_at: datetime
    image_path: Optional[str] = None
    image_source: Optional[str] = None
    source_type: Optional[str] = None
    source_data: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None


@dataclass(frozen=True)
class ProcessLog:
    """Secondary record of a finished job, successful or not."""
    process_type: str
    status: str
    created_at: datetime
    details: Optional[str] = None
    cost: Decimal = Decimal("0")
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
