"""
Progress reporting for long-running jobs.

A JobReporter is a push-based channel with one producer (the orchestrator)
and one consumer (typically an HTTP client reading server-sent events).
Events are delivered in emission order. Delivery is best-effort: once the
subscriber detaches, emits become logged no-ops while the job itself keeps
running.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 2000
TERMINAL_STEPS = frozenset({"complete", "error"})

_CLOSED = object()


@dataclass(frozen=True)
class ProgressEvent:
    """One unit of streamed status for a job."""
    step: str
    message: str
    progress: int
    timestamp: datetime = field(default_factory=datetime.now)
    payload: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "message": self.message,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
            "data": self.payload,
        }


def format_sse(event: ProgressEvent) -> str:
    """Encode an event as one server-sent-events message."""
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


def sanitize_payload(value: Any) -> Any:
    """Strip raw media from a payload so only summaries travel in events.

    Bytes are replaced by their size, data URLs by a marker and long
    strings are truncated.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"elided": "bytes", "size": len(value)}
    if isinstance(value, str):
        if value.startswith("data:"):
            return f"<elided data URL, {len(value)} chars>"
        if len(value) > MAX_STRING_LENGTH:
            return value[:MAX_STRING_LENGTH] + "..."
        return value
    if isinstance(value, dict):
        return {str(key): sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item) for item in value]
    return value


class JobReporter:
    """Ordered progress stream for a single job.

    Usage:
        reporter = JobReporter()
        reporter.start(job_id)
        reporter.emit("download", "Downloading reel...", 15)
        reporter.complete({"artifact": {...}})
        reporter.close()

    The subscriber iterates ``events()`` until the channel is closed.
    """

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id
        self.history: List[ProgressEvent] = []
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._started = False
        self._finished = False
        self._closed = False
        self._detached = False
        self._last_progress = 0

    @property
    def finished(self) -> bool:
        """True once a terminal event was emitted."""
        return self._finished

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_progress(self) -> int:
        return self._last_progress

    def start(self, job_id: Optional[str] = None) -> ProgressEvent:
        """Open the channel with the initial start event at progress 0."""
        if self._started:
            raise RuntimeError(f"Reporter for job {self.job_id} already started")
        if job_id is not None:
            self.job_id = job_id
        self._started = True
        return self._push(ProgressEvent(step="start", message="Job started", progress=0))

    def emit(
        self,
        step: str,
        message: str,
        progress: int,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[ProgressEvent]:
        """Emit an intermediate progress event.

        Raises:
            ValueError: If progress is outside 0..100 or lower than the last event
            RuntimeError: If the reporter was never started
        """
        if step in TERMINAL_STEPS:
            raise ValueError(f"Use complete() or fail() for the {step!r} step")
        if not self._started:
            raise RuntimeError("emit() called before start()")
        if self._finished or self._closed:
            logger.warning(
                "Dropping %r event for job %s: channel already finished", step, self.job_id
            )
            return None
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be within 0..100, got {progress}")
        if progress < self._last_progress:
            raise ValueError(
                f"progress must not decrease ({progress} < {self._last_progress})"
            )
        return self._push(ProgressEvent(step, message, progress, payload=sanitize_payload(payload)))

    def complete(self, payload: Optional[Dict[str, Any]] = None) -> Optional[ProgressEvent]:
        """Emit the terminal complete event at progress 100."""
        if self._finished or self._closed:
            logger.warning("Ignoring complete() for job %s: channel already finished", self.job_id)
            return None
        self._finished = True
        return self._push(ProgressEvent(
            step="complete",
            message="Job complete",
            progress=100,
            payload=sanitize_payload(payload),
        ))

    def fail(self, message: str, payload: Optional[Dict[str, Any]] = None) -> Optional[ProgressEvent]:
        """Emit the terminal error event.

        The event repeats the last reached progress so the sequence never
        decreases.
        """
        if self._finished or self._closed:
            logger.warning("Ignoring fail() for job %s: channel already finished", self.job_id)
            return None
        self._finished = True
        return self._push(ProgressEvent(
            step="error",
            message=message,
            progress=self._last_progress,
            payload=sanitize_payload(payload),
        ))

    def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        """Mark the subscriber as gone. Later emits are not delivered."""
        if not self._detached:
            logger.info("Subscriber for job %s disconnected", self.job_id)
        self._detached = True

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in emission order until the channel is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def _push(self, event: ProgressEvent) -> ProgressEvent:
        self._last_progress = event.progress
        self.history.append(event)
        if self._detached:
            logger.debug("No subscriber for job %s, %r event not delivered", self.job_id, event.step)
        else:
            self._queue.put_nowait(event)
        return event
