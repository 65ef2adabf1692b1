"""
Job orchestration.

Every job runs the same sequence:

    Estimating -> BudgetCheck -> Executing -> Persisting -> Reporting

Subclasses supply the estimate and the executing step. The base class owns
budget gating, ledger writes, artifact persistence, the terminal event,
channel release and temporary-file cleanup.

Failure semantics:
1. Validation and budget errors end the job before any external call
2. Provider errors end the job unless the job type defines a fallback
3. Costs already incurred are written to the ledger even when the job fails
4. Persistence errors fail the job even if the provider call succeeded
5. The orchestrator itself stays usable for the next job
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .budget import BudgetPolicy
from .errors import BudgetExceeded, ContentForgeError
from .interfaces import ArtifactStore, TextGeneration
from .pricing import PRICING_TABLE, calculate_cost, estimate_text_cost
from .reporter import JobReporter
from .token_counter import TokenUsage
from content_forge.storage.models import CostEntry, ProcessLog, Service
from content_forge.storage.repository import CostLedger, ProcessLogRepository

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Execution state of one job: its reporter, billed calls and temp files."""
    job_id: str
    reporter: JobReporter
    clock: Callable[[], datetime] = datetime.now
    costs: List[CostEntry] = field(default_factory=list)
    temp_paths: List[Path] = field(default_factory=list)
    costs_recorded: bool = False

    def bill(
        self,
        service: Service,
        operation: str,
        cost: Decimal,
        tokens_used: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CostEntry:
        """Note one completed billed call. Written to the ledger on persist."""
        entry = CostEntry(
            service=service,
            operation=operation,
            cost=cost,
            timestamp=self.clock(),
            tokens_used=tokens_used,
            related_job_id=self.job_id,
            metadata=metadata or {},
        )
        self.costs.append(entry)
        return entry

    def track_temp(self, path: Path) -> Path:
        """Register a temporary file for unconditional cleanup."""
        self.temp_paths.append(Path(path))
        return path

    @property
    def total_cost(self) -> Decimal:
        return sum((entry.cost for entry in self.costs), Decimal("0"))


@dataclass
class JobOutcome:
    """What the executing step produced."""
    content: str
    details: str
    artifact_fields: Dict[str, Any] = field(default_factory=dict)
    artifact_id: Optional[int] = None  # set to update an existing artifact
    payload: Dict[str, Any] = field(default_factory=dict)
    store_artifact: bool = True


def text_generation_cost(result: TextGeneration, fallback_prompt: str = "") -> Decimal:
    """Cost of a finished text generation from the provider's token counts.

    Models missing from the pricing table are billed at the estimate for
    the configured default so the call is never recorded as free.
    """
    if PRICING_TABLE.supports(result.model_name):
        usage = TokenUsage(
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens or max(result.tokens_used - result.prompt_tokens, 0),
        )
        return calculate_cost(result.model_name, usage)
    logger.warning("No pricing for model %s, billing the gpt-4o estimate", result.model_name)
    return estimate_text_cost("gpt-4o", fallback_prompt + result.content)


class JobOrchestrator:
    """Base orchestrator. Subclasses implement validate, estimate and execute."""

    process_type = "job"

    def __init__(
        self,
        ledger: CostLedger,
        budget: BudgetPolicy,
        artifacts: ArtifactStore,
        process_log: Optional[ProcessLogRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.budget = budget
        self.artifacts = artifacts
        self.process_log = process_log
        self.clock = clock

    def validate(self, request) -> None:
        """Raise ValidationError for bad input. No external call may precede it."""
        raise NotImplementedError

    def estimate(self, request) -> Decimal:
        raise NotImplementedError

    async def execute(self, request, job: JobContext) -> JobOutcome:
        raise NotImplementedError

    def complete_payload(self, outcome: JobOutcome, artifact_id: Optional[int], job: JobContext) -> Dict[str, Any]:
        payload = {
            "artifact": {
                "id": artifact_id,
                "content": outcome.content,
                "cost": str(job.total_cost),
            },
            "cost": str(job.total_cost),
            "jobId": job.job_id,
        }
        payload.update(outcome.payload)
        return payload

    def temp_files(self, request) -> List[Path]:
        """Files the request hands over to the job. Deleted when the job ends."""
        return []

    async def run(self, request, reporter: JobReporter, job_id: Optional[str] = None) -> Optional[int]:
        """Execute one job end to end, reporting through the given channel.

        Never raises for job failures; they end as an error event.
        Cancellation still records incurred costs and emits the error
        event before propagating.

        Blocking storage calls run in worker threads so concurrent streams
        keep flowing.

        Returns:
            The artifact id on success, None on failure or for jobs that
            store no artifact
        """
        job_id = job_id or reporter.job_id or uuid.uuid4().hex
        job = JobContext(job_id=job_id, reporter=reporter, clock=self.clock)
        for path in self.temp_files(request):
            job.track_temp(path)
        if not reporter.started:
            reporter.start(job.job_id)

        try:
            self.validate(request)

            estimated = self.estimate(request)
            reporter.emit("estimate", f"Estimated cost ${estimated:.4f}", 10, {
                "estimatedCost": f"${estimated:.4f}",
            })

            decision = await asyncio.to_thread(self.budget.can_afford, estimated)
            if not decision.allowed:
                raise BudgetExceeded(decision.reason)
            reporter.emit("budget", "Budget check passed", 20)

            outcome = await self.execute(request, job)

            reporter.emit("save", "Saving result...", 90)
            artifact_id = await asyncio.to_thread(self._persist, job, outcome)
            await asyncio.to_thread(
                self._log_process, "success", outcome.details, job, {"artifactId": artifact_id}
            )
            await asyncio.to_thread(self._check_alerts)

            reporter.complete(self.complete_payload(outcome, artifact_id, job))
            return artifact_id

        except ContentForgeError as e:
            logger.warning("%s job %s failed: %s", self.process_type, job.job_id, e)
            await self._fail(job, str(e))
        except asyncio.CancelledError:
            logger.warning("%s job %s cancelled", self.process_type, job.job_id)
            # No await here, so a second cancel cannot interrupt the write
            self._fail_now(job, "Job cancelled")
            raise
        except Exception as e:
            logger.exception("%s job %s crashed", self.process_type, job.job_id)
            await self._fail(job, f"Unexpected error: {e}")
        finally:
            self._cleanup(job)
            reporter.close()
        return None

    def _persist(self, job: JobContext, outcome: JobOutcome) -> Optional[int]:
        self._record_costs(job)
        if not outcome.store_artifact:
            return None

        fields = dict(outcome.artifact_fields)
        if outcome.artifact_id is not None:
            self.artifacts.update_artifact(outcome.artifact_id, fields)
            return outcome.artifact_id

        fields.setdefault("ai_cost", job.total_cost)
        fields["job_id"] = job.job_id
        return self.artifacts.create_artifact(outcome.content, fields)

    def _record_costs(self, job: JobContext) -> None:
        if job.costs_recorded or not job.costs:
            return
        self.ledger.append_many(job.costs)
        job.costs_recorded = True

    async def _fail(self, job: JobContext, message: str) -> None:
        await asyncio.to_thread(self._record_failure, job, message)
        self._report_failure(job, message)

    def _fail_now(self, job: JobContext, message: str) -> None:
        self._record_failure(job, message)
        self._report_failure(job, message)

    def _record_failure(self, job: JobContext, message: str) -> None:
        try:
            self._record_costs(job)
        except ContentForgeError:
            logger.exception(
                "Could not record $%s incurred by failed job %s", job.total_cost, job.job_id
            )
        self._log_process("error", message, job)

    def _report_failure(self, job: JobContext, message: str) -> None:
        job.reporter.fail(message, {"cost": str(job.total_cost)} if job.costs else None)

    def _log_process(self, status: str, details: str, job: JobContext, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.process_log is None:
            return
        try:
            self.process_log.add(ProcessLog(
                process_type=self.process_type,
                status=status,
                details=details,
                cost=job.total_cost,
                metadata={"jobId": job.job_id, **(metadata or {})},
                created_at=self.clock(),
            ))
        except Exception:
            # Secondary log only; must not mask the job's own outcome
            logger.exception("Failed to write process log for job %s", job.job_id)

    def _check_alerts(self) -> None:
        try:
            self.budget.check_alerts()
        except ContentForgeError:
            logger.exception("Budget alert check failed")

    def _cleanup(self, job: JobContext) -> None:
        for path in job.temp_paths:
            try:
                if path.exists():
                    path.unlink()
                    logger.info("Deleted temp file %s", path)
            except OSError:
                logger.exception("Failed to delete temp file %s", path)
