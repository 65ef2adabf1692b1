from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.budget import BudgetHealth, DailyLimitStatus
from ..core.errors import ValidationError
from ..core.interfaces import StockPhoto
from ..core.jobs import (
    ImprovePostRequest,
    InfographicRequest,
    PostAnalysisRequest,
    ReelAnalysisRequest,
    TextGenerationRequest,
)
from ..storage.models import Artifact, CostEntry, MonthlySummary, ProcessLog


class _Body(BaseModel):
    """Request bodies accept camelCase or snake_case keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateBody(_Body):
    topic: str = ""
    additional_context: Optional[str] = None

    def to_request(self) -> TextGenerationRequest:
        return TextGenerationRequest(topic=self.topic, additional_context=self.additional_context)


class AnalyzeReelBody(_Body):
    video_url: Optional[str] = None
    description: Optional[str] = None

    def to_request(self) -> ReelAnalysisRequest:
        return ReelAnalysisRequest(video_url=self.video_url, description=self.description)


class InfographicBody(_Body):
    post_content: str = ""
    topic: Optional[str] = None

    def to_request(self) -> InfographicRequest:
        return InfographicRequest(post_content=self.post_content, topic=self.topic)


class ImproveBody(_Body):
    original_post: str = ""
    feedback_points: List[str] = Field(default_factory=list)
    artifact_id: Optional[int] = None

    def to_request(self) -> ImprovePostRequest:
        return ImprovePostRequest(
            original_post=self.original_post,
            feedback_points=list(self.feedback_points),
            artifact_id=self.artifact_id,
        )


class AnalyzePostBody(_Body):
    post: str = ""

    def to_request(self) -> PostAnalysisRequest:
        return PostAnalysisRequest(post=self.post)


def _money(value: Decimal) -> float:
    return float(value)


def cost_entry_out(entry: CostEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat(),
        "service": entry.service.value,
        "operation": entry.operation,
        "tokensUsed": entry.tokens_used,
        "cost": _money(entry.cost),
        "relatedJobId": entry.related_job_id,
        "metadata": entry.metadata,
    }


def summary_out(summary: MonthlySummary) -> Dict[str, Any]:
    return {
        "totalCost": _money(summary.total_cost),
        "byService": [
            {"service": row.service.value, "cost": _money(row.cost), "callCount": row.call_count}
            for row in summary.by_service
        ],
        "byDay": [{"date": row.date.isoformat(), "cost": _money(row.cost)} for row in summary.by_day],
        "budgetLimit": _money(summary.budget_limit),
        "budgetUsedPercent": summary.budget_used_percent,
        "budgetRemaining": _money(summary.budget_remaining),
        "isNearBudget": summary.is_near_budget,
        "isOverBudget": summary.is_over_budget,
    }


def daily_status_out(status: DailyLimitStatus) -> Dict[str, Any]:
    return {
        "limit": _money(status.limit),
        "current": _money(status.current),
        "remaining": _money(status.remaining),
        "isExceeded": status.is_exceeded,
    }


def health_out(health: BudgetHealth) -> Dict[str, Any]:
    return {
        "status": health.status.value,
        "message": health.message,
        "percentage": health.percentage,
    }


def artifact_out(artifact: Artifact) -> Dict[str, Any]:
    return {
        "id": artifact.id,
        "content": artifact.content,
        "status": artifact.status,
        "aiCost": _money(artifact.ai_cost),
        "imageUrl": f"/api/artifacts/{artifact.id}/image" if artifact.image_path else None,
        "imageSource": artifact.image_source,
        "sourceType": artifact.source_type,
        "sourceData": artifact.source_data,
        "jobId": artifact.job_id,
        "createdAt": artifact.created_at.isoformat(),
        "updatedAt": artifact.updated_at.isoformat(),
    }


def stock_photo_out(photo: StockPhoto) -> Dict[str, Any]:
    return {
        "id": photo.id,
        "url": photo.url,
        "photographer": photo.photographer,
        "src": dict(photo.src),
    }


def process_log_out(log: ProcessLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "processType": log.process_type,
        "status": log.status,
        "details": log.details,
        "cost": _money(log.cost),
        "metadata": log.metadata,
        "createdAt": log.created_at.isoformat(),
    }


def parse_day(value: Optional[str], name: str) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"'{name}' must be a YYYY-MM-DD date, got {value!r}")
