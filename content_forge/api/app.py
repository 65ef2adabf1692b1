"""
HTTP transport.

Job endpoints answer with a server-sent-events stream: one ``data:`` line
per progress event, ending after the terminal event. Each job runs as its
own asyncio task, so a client that disconnects only detaches from the
stream; the job finishes and its costs are still recorded.
"""

import asyncio
import logging
import mimetypes
import uuid
from datetime import datetime, time, timedelta
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse

from ..config.loader import AppConfig, load_config
from ..container import Services, build_services
from ..core.budget import month_window
from ..core.errors import PersistenceError, ProviderError, ValidationError
from ..core.jobs import VideoUploadRequest
from ..core.orchestrator import JobOrchestrator
from ..core.reporter import JobReporter, format_sse
from .schemas import (
    AnalyzePostBody,
    AnalyzeReelBody,
    GenerateBody,
    ImproveBody,
    InfographicBody,
    artifact_out,
    cost_entry_out,
    daily_status_out,
    health_out,
    parse_day,
    process_log_out,
    stock_photo_out,
    summary_out,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

# Request body cap for uploaded videos
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None) -> FastAPI:
    if services is None:
        services = build_services(config or load_config())

    app = FastAPI(title="Content Forge")
    app.state.services = services
    # Strong references keep running jobs alive after their stream closes
    app.state.jobs = set()

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse({"success": False, "error": str(exc)}, status_code=400)

    @app.exception_handler(RequestValidationError)
    async def body_error(request: Request, exc: RequestValidationError):
        details = [error.get("msg") for error in exc.errors()]
        return JSONResponse({"success": False, "error": "Invalid request body", "details": details}, status_code=400)

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        logger.error("Storage failure: %s", exc)
        return JSONResponse({"success": False, "error": "Storage unavailable"}, status_code=500)

    @app.exception_handler(ProviderError)
    async def provider_error(request: Request, exc: ProviderError):
        logger.warning("Provider %s failed: %s", exc.provider, exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=502)

    def stream_job(job: JobOrchestrator, request) -> StreamingResponse:
        # Bad input is rejected before the stream opens
        job.validate(request)

        reporter = JobReporter()
        task = asyncio.create_task(job.run(request, reporter))
        app.state.jobs.add(task)
        task.add_done_callback(app.state.jobs.discard)

        async def events():
            try:
                async for event in reporter.events():
                    yield format_sse(event)
            finally:
                reporter.detach()

        return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/ai/generate")
    async def generate_post(body: GenerateBody):
        return stream_job(app.state.services.text_job, body.to_request())

    @app.post("/api/instagram/analyze")
    async def analyze_reel(body: AnalyzeReelBody):
        return stream_job(app.state.services.reel_job, body.to_request())

    @app.post("/api/infographic/generate")
    async def generate_infographic(body: InfographicBody):
        return stream_job(app.state.services.infographic_job, body.to_request())

    @app.post("/api/ai/improve")
    async def improve_post(body: ImproveBody):
        return stream_job(app.state.services.improve_job, body.to_request())

    @app.post("/api/ai/analyze")
    async def analyze_post(body: AnalyzePostBody):
        return stream_job(app.state.services.analysis_job, body.to_request())

    @app.post("/api/instagram/upload")
    async def upload_video(video: UploadFile = File(...), description: Optional[str] = Form(None)):
        """Save the upload to the temp dir and stream its analysis.

        The job owns the saved file and deletes it when it ends.
        """
        data = await video.read()
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationError(f"Video exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)}MB upload limit")

        filename = Path(video.filename or "video").name
        temp_dir = Path(app.state.services.config.storage.temp_dir)
        path = temp_dir / f"upload-{uuid.uuid4().hex}-{filename}"

        def save():
            temp_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(save)
        except OSError as e:
            raise PersistenceError(f"Failed to save upload: {e}") from e

        request = VideoUploadRequest(file_path=path, filename=filename, description=description)
        try:
            return stream_job(app.state.services.upload_job, request)
        except ValidationError:
            path.unlink(missing_ok=True)
            raise

    @app.get("/api/images/search")
    async def search_images(query: str = "", per_page: int = Query(6, alias="perPage")):
        photos = await app.state.services.photo_search.search(query, per_page)
        return {"success": True, "photos": [stock_photo_out(p) for p in photos]}

    @app.get("/api/costs/summary")
    def cost_summary():
        budget = app.state.services.budget
        summary = budget.monthly_summary()
        return {
            "success": True,
            "summary": summary_out(summary),
            "dailyLimit": daily_status_out(budget.daily_status()),
            "budgetHealth": health_out(budget.health(summary)),
            "recentCosts": [cost_entry_out(e) for e in app.state.services.ledger.recent(10)],
            "estimatedRemainingPosts": budget.estimated_remaining_posts(),
        }

    @app.get("/api/costs/export")
    def export_costs(start: Optional[str] = None, end: Optional[str] = None):
        """CSV of ledger entries from start (inclusive) to end (inclusive) days."""
        window_start, window_end = month_window(app.state.services.budget.clock())
        start_day = parse_day(start, "start")
        end_day = parse_day(end, "end")
        if start_day is not None:
            window_start = datetime.combine(start_day, time.min)
        if end_day is not None:
            window_end = datetime.combine(end_day + timedelta(days=1), time.min)
        if window_start >= window_end:
            raise ValidationError("'start' must not be after 'end'")

        csv_text = app.state.services.ledger.export_csv(window_start, window_end)
        last_day = (window_end - timedelta(days=1)).date()
        filename = f"costs-{window_start.date().isoformat()}-{last_day.isoformat()}.csv"
        return Response(
            content=csv_text,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/logs")
    def list_logs(limit: int = Query(50, ge=1, le=500)):
        logs = app.state.services.process_log.recent(limit)
        return {"success": True, "logs": [process_log_out(log) for log in logs]}

    @app.get("/api/artifacts")
    def list_artifacts(limit: int = Query(50, ge=1, le=500)):
        artifacts = app.state.services.artifacts.list_artifacts(limit)
        return {"success": True, "artifacts": [artifact_out(a) for a in artifacts]}

    @app.get("/api/artifacts/{artifact_id}")
    def get_artifact(artifact_id: int):
        artifact = app.state.services.artifacts.get_artifact(artifact_id)
        if artifact is None:
            raise HTTPException(status_code=404, detail="Artifact not found")
        return {"success": True, "artifact": artifact_out(artifact)}

    @app.get("/api/artifacts/{artifact_id}/image")
    def get_artifact_image(artifact_id: int):
        artifact = app.state.services.artifacts.get_artifact(artifact_id)
        if artifact is None or not artifact.image_path:
            raise HTTPException(status_code=404, detail="Image not found")
        image_path = Path(artifact.image_path)
        if not image_path.is_file():
            raise HTTPException(status_code=404, detail="Image file missing")
        return FileResponse(
            path=str(image_path),
            media_type=mimetypes.guess_type(image_path.name)[0] or "application/octet-stream",
            filename=image_path.name,
        )

    return app
