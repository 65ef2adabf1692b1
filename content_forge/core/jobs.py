"""
Job types run by the orchestrator.

Each job validates its own request, estimates its cost before any billed
call and implements the executing step. Fallback handling lives here; the
shared state machine lives in orchestrator.py.
"""

import asyncio
import dataclasses
import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import DownloadError, PersistenceError, ProviderError, TranscriptionError, ValidationError
from .fallback_renderer import SVG_MIME_TYPE, render_fallback
from .interfaces import (
    Downloader,
    GeneratedImage,
    ImageGenerator,
    StyleSelector,
    TextGenerator,
    Transcriber,
)
from .orchestrator import JobContext, JobOrchestrator, JobOutcome, text_generation_cost
from .pricing import (
    IMAGE_GENERATION_COST,
    IMPROVE_POST_ESTIMATE,
    PRICING_TABLE,
    estimate_text_cost,
    transcription_cost,
)
from .style import build_image_prompt
from content_forge.storage.models import Service

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write concise, professional LinkedIn posts for a technical audience. "
    "Use short paragraphs, concrete takeaways and at most three hashtags."
)

ANALYST_PROMPT = "You are a LinkedIn content analyst. Return only valid JSON."

# Assumed clip length for estimates and for providers that report no duration
ESTIMATED_REEL_SECONDS = 60

INSTAGRAM_HOSTS = ("instagram.com", "www.instagram.com")

# Criteria scored 0-10 by post analysis, in display order
SCORE_CRITERIA = {
    "hookStrength": "Hook Strength: does it stop scrolling in the first 2 lines?",
    "readability": "Readability: short paragraphs, white space, mobile-friendly?",
    "value": "Value: does it teach something concrete and actionable?",
    "specificity": "Specificity: numbers, examples, names vs generic advice?",
    "callToAction": "Call-to-Action: a clear question that invites comments?",
    "length": "Length: optimal length (800-1300 characters)?",
    "hashtags": "Hashtags: relevant and strategic?",
    "engagementPotential": "Engagement Potential: overall likelihood of high engagement?",
}

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

_IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    SVG_MIME_TYPE: "svg",
}


def _require_text(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()


def is_instagram_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and parsed.netloc.lower() in INSTAGRAM_HOSTS


def _estimate_for(generator: TextGenerator, prompt: str, system: str = SYSTEM_PROMPT) -> Decimal:
    model = generator.model_name if PRICING_TABLE.supports(generator.model_name) else "gpt-4o"
    return estimate_text_cost(model, system + prompt)


@dataclass(frozen=True)
class TextGenerationRequest:
    topic: str
    additional_context: Optional[str] = None


@dataclass(frozen=True)
class ReelAnalysisRequest:
    video_url: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class VideoUploadRequest:
    """A video the caller uploaded. file_path is owned by the job from here on."""
    file_path: Path
    filename: str
    description: Optional[str] = None


@dataclass(frozen=True)
class InfographicRequest:
    post_content: str
    topic: Optional[str] = None


@dataclass(frozen=True)
class ImprovePostRequest:
    original_post: str
    feedback_points: List[str] = field(default_factory=list)
    artifact_id: Optional[int] = None

    @property
    def feedback(self) -> List[str]:
        """Feedback points with blanks dropped and whitespace stripped."""
        return [point.strip() for point in self.feedback_points if point and point.strip()]


@dataclass(frozen=True)
class PostAnalysisRequest:
    post: str


class TextGenerationJob(JobOrchestrator):
    """Topic to LinkedIn post. Fail-fast: no fallback on provider errors."""

    process_type = "ai_post"

    def __init__(self, text_generator: TextGenerator, **kwargs):
        super().__init__(**kwargs)
        self.text_generator = text_generator

    @staticmethod
    def build_prompt(request: TextGenerationRequest) -> str:
        prompt = f"Write a LinkedIn post about: {request.topic.strip()}"
        if request.additional_context and request.additional_context.strip():
            prompt += f"\n\nAdditional context:\n{request.additional_context.strip()}"
        return prompt

    def validate(self, request: TextGenerationRequest) -> None:
        _require_text(request.topic, "topic")

    def estimate(self, request: TextGenerationRequest) -> Decimal:
        return _estimate_for(self.text_generator, self.build_prompt(request))

    async def execute(self, request: TextGenerationRequest, job: JobContext) -> JobOutcome:
        reporter = job.reporter
        reporter.emit("prompt", "Building prompt...", 30)
        prompt = self.build_prompt(request)
        reporter.emit("prompt", "Prompt ready", 40, {"topic": request.topic})

        reporter.emit("generate", "Generating post...", 50)
        result = await self.text_generator.generate(prompt, system=SYSTEM_PROMPT)
        cost = text_generation_cost(result, prompt)
        job.bill(
            Service.TEXT_GEN,
            "generate_post",
            cost,
            tokens_used=result.tokens_used,
            metadata={"model": result.model_name, "topic": request.topic},
        )
        reporter.emit("generate", "Post generated", 80, {
            "tokensUsed": result.tokens_used,
            "cost": str(cost),
        })

        return JobOutcome(
            content=result.content,
            details=f"Generated post about {request.topic}",
            artifact_fields={
                "source_type": "ai_research",
                "source_data": {
                    "topic": request.topic,
                    "additionalContext": request.additional_context,
                },
            },
        )


class _VideoPostJob(JobOrchestrator):
    """Shared steps for jobs that turn a video into a post.

    A failed transcription falls back to the user's description; without
    one the job errors.
    """

    def __init__(self, text_generator: TextGenerator, transcriber: Transcriber, **kwargs):
        super().__init__(**kwargs)
        self.text_generator = text_generator
        self.transcriber = transcriber

    @staticmethod
    def build_prompt(source_text: str, from_transcript: bool) -> str:
        label = "transcript of an Instagram reel" if from_transcript else "description of an Instagram reel"
        return (
            f"Turn the following {label} into a LinkedIn post with the key insight "
            f"and a practical takeaway.\n\n{source_text}"
        )

    def _estimate_post(self, description: Optional[str], with_audio: bool) -> Decimal:
        estimate = _estimate_for(
            self.text_generator,
            self.build_prompt(description or "", from_transcript=False),
        )
        if with_audio:
            estimate += transcription_cost(ESTIMATED_REEL_SECONDS)
        return estimate

    async def _transcribe(self, audio_path: Path, description: str, job: JobContext) -> Optional[str]:
        reporter = job.reporter
        reporter.emit("transcribe", "Transcribing audio...", 40)
        try:
            transcription = await self.transcriber.transcribe(Path(audio_path))
        except TranscriptionError as e:
            if not description:
                raise TranscriptionError(
                    f"{e}; no description provided to fall back on", provider=e.provider
                ) from e
            reporter.emit("transcribe", "Transcription failed, using the description instead", 50, {
                "warning": str(e),
            })
            return None

        metadata: Dict[str, Any] = {"model": getattr(self.transcriber, "model_name", None)}
        duration = transcription.duration_seconds
        if duration is None or duration <= 0:
            logger.warning(
                "No clip duration for job %s, billing %ss", job.job_id, ESTIMATED_REEL_SECONDS
            )
            duration = ESTIMATED_REEL_SECONDS
            metadata["durationEstimated"] = True
        metadata["durationSeconds"] = duration

        cost = transcription_cost(duration)
        job.bill(Service.TRANSCRIPTION, "transcribe_audio", cost, metadata=metadata)
        reporter.emit("transcribe", "Transcription complete", 50, {
            "characters": len(transcription.text),
            "cost": str(cost),
        })
        return transcription.text

    async def _write_post(self, transcript: Optional[str], description: str, operation: str, job: JobContext):
        """Generate the post from the transcript or the description.

        Returns:
            (generation result, source) where source is "transcription" or "description"
        """
        if transcript:
            source_text, source = transcript, "transcription"
        elif description:
            source_text, source = description, "description"
        else:
            raise TranscriptionError("Transcription returned no text and no description was provided")

        job.reporter.emit("analyze", f"Writing post from {source}...", 60)
        prompt = self.build_prompt(source_text, from_transcript=source == "transcription")
        result = await self.text_generator.generate(prompt, system=SYSTEM_PROMPT)
        cost = text_generation_cost(result, prompt)
        job.bill(
            Service.TEXT_GEN,
            operation,
            cost,
            tokens_used=result.tokens_used,
            metadata={"model": result.model_name, "source": source},
        )
        job.reporter.emit("analyze", "Post generated", 80, {
            "tokensUsed": result.tokens_used,
            "cost": str(cost),
        })
        return result, source


class ReelAnalysisJob(_VideoPostJob):
    """Instagram reel to LinkedIn post.

    Downloads the audio, transcribes it and writes a post from the
    transcript. A failed download also falls back to the description.
    """

    process_type = "reel_analysis"

    def __init__(
        self,
        text_generator: TextGenerator,
        transcriber: Transcriber,
        downloader: Downloader,
        **kwargs,
    ):
        super().__init__(text_generator, transcriber, **kwargs)
        self.downloader = downloader

    def validate(self, request: ReelAnalysisRequest) -> None:
        has_description = bool(request.description and request.description.strip())
        if is_instagram_url(request.video_url) or has_description:
            return
        if request.video_url:
            raise ValidationError(
                "Only Instagram reel URLs can be downloaded; provide a description instead"
            )
        raise ValidationError("Provide an Instagram reel URL or a video description")

    def estimate(self, request: ReelAnalysisRequest) -> Decimal:
        return self._estimate_post(request.description, is_instagram_url(request.video_url))

    async def execute(self, request: ReelAnalysisRequest, job: JobContext) -> JobOutcome:
        description = (request.description or "").strip()
        transcript = None

        if is_instagram_url(request.video_url):
            transcript = await self._transcribe_reel(request.video_url, description, job)

        result, source = await self._write_post(transcript, description, "analyze_reel", job)
        return JobOutcome(
            content=result.content,
            details=f"Analyzed reel from {source}",
            artifact_fields={
                "source_type": "instagram",
                "source_data": {
                    "videoUrl": request.video_url,
                    "description": description or None,
                    "transcription": transcript,
                    "source": source,
                },
            },
            payload={"source": source, "transcription": transcript},
        )

    async def _transcribe_reel(self, url: str, description: str, job: JobContext) -> Optional[str]:
        reporter = job.reporter

        reporter.emit("download", "Downloading reel audio...", 25)
        try:
            audio_path = job.track_temp(await self.downloader.fetch(url))
        except DownloadError as e:
            if not description:
                raise DownloadError(f"{e}; no description provided to fall back on") from e
            reporter.emit("download", "Download failed, using the description instead", 35, {
                "warning": str(e),
            })
            return None
        reporter.emit("download", "Download complete", 35, {"file": Path(audio_path).name})

        return await self._transcribe(Path(audio_path), description, job)


class VideoUploadJob(_VideoPostJob):
    """Uploaded video file to LinkedIn post.

    Same as reel analysis without the download step. The uploaded file is
    deleted when the job ends, whatever the outcome.
    """

    process_type = "video_upload"

    def temp_files(self, request: VideoUploadRequest) -> List[Path]:
        return [Path(request.file_path)]

    def validate(self, request: VideoUploadRequest) -> None:
        _require_text(request.filename, "filename")
        path = Path(request.file_path)
        if not path.is_file() or path.stat().st_size == 0:
            raise ValidationError("Uploaded video is empty")

    def estimate(self, request: VideoUploadRequest) -> Decimal:
        return self._estimate_post(request.description, with_audio=True)

    async def execute(self, request: VideoUploadRequest, job: JobContext) -> JobOutcome:
        description = (request.description or "").strip()
        job.reporter.emit("upload", "Video received", 30, {"file": request.filename})

        transcript = await self._transcribe(Path(request.file_path), description, job)
        result, source = await self._write_post(transcript, description, "analyze_upload", job)
        return JobOutcome(
            content=result.content,
            details=f"Generated post from uploaded video {request.filename}",
            artifact_fields={
                "source_type": "instagram",
                "source_data": {
                    "fileName": request.filename,
                    "description": description or None,
                    "transcription": transcript,
                    "source": source,
                },
            },
            payload={"source": source, "transcription": transcript},
        )


class InfographicJob(JobOrchestrator):
    """Post content to an infographic image.

    When the image provider fails or returns no image data, a local SVG is
    rendered instead at no cost.
    """

    process_type = "infographic"

    def __init__(
        self,
        image_generator: ImageGenerator,
        style_selector: StyleSelector,
        output_dir: Path,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.image_generator = image_generator
        self.style_selector = style_selector
        self.output_dir = Path(output_dir)

    def validate(self, request: InfographicRequest) -> None:
        _require_text(request.post_content, "post_content")

    def estimate(self, request: InfographicRequest) -> Decimal:
        return IMAGE_GENERATION_COST

    async def execute(self, request: InfographicRequest, job: JobContext) -> JobOutcome:
        reporter = job.reporter

        reporter.emit("style", "Choosing layout...", 30)
        style = self.style_selector.select(request.post_content)
        if request.topic and request.topic.strip():
            style = dataclasses.replace(style, headline=request.topic.strip())
        reporter.emit("style", f"Using the {style.template} layout", 35, {
            "template": style.template,
            "headline": style.headline,
        })

        reporter.emit("image", "Generating image...", 50)
        image = await self._generate(build_image_prompt(style), job)
        if image is not None and image.has_image:
            source = "generated"
            job.bill(
                Service.IMAGE_GEN,
                "generate_image",
                IMAGE_GENERATION_COST,
                metadata={"model": image.model_name, "template": style.template},
            )
        else:
            source = "fallback"
            image = render_fallback(style)
        reporter.emit("image", "Image ready", 80, {
            "imageSource": source,
            "image": image.image_bytes,
        })

        image_path = await asyncio.to_thread(self._save_image, job.job_id, image)
        return JobOutcome(
            content=request.post_content,
            details=f"Infographic ({style.template}, {source})",
            artifact_fields={
                "image_path": str(image_path),
                "image_source": source,
                "source_type": "infographic",
                "source_data": {
                    "template": style.template,
                    "topic": request.topic,
                    "mimeType": image.mime_type,
                },
            },
            payload={"imageSource": source, "template": style.template},
        )

    async def _generate(self, prompt: str, job: JobContext) -> Optional[GeneratedImage]:
        try:
            return await self.image_generator.generate(prompt)
        except ProviderError as e:
            logger.warning("Image generation failed for job %s: %s", job.job_id, e)
            job.reporter.emit("image", "Image provider failed, rendering fallback", 60, {
                "warning": str(e),
            })
            return None

    def _save_image(self, job_id: str, image: GeneratedImage) -> Path:
        extension = _IMAGE_EXTENSIONS.get(image.mime_type, "png")
        path = self.output_dir / f"{job_id}.{extension}"
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(image.image_bytes)
        except OSError as e:
            raise PersistenceError(f"Failed to save image: {e}") from e
        return path

    def complete_payload(self, outcome: JobOutcome, artifact_id: Optional[int], job: JobContext) -> Dict[str, Any]:
        payload = super().complete_payload(outcome, artifact_id, job)
        payload["artifact"]["imageUrl"] = f"/api/artifacts/{artifact_id}/image"
        payload["artifact"]["imageSource"] = outcome.payload["imageSource"]
        return payload


class ImprovePostJob(JobOrchestrator):
    """Rewrites a post according to reviewer feedback."""

    process_type = "improve_post"

    def __init__(self, text_generator: TextGenerator, **kwargs):
        super().__init__(**kwargs)
        self.text_generator = text_generator

    @staticmethod
    def build_prompt(request: ImprovePostRequest) -> str:
        feedback = "\n".join(f"- {point}" for point in request.feedback)
        return (
            "Improve this LinkedIn post. Apply every feedback point and keep the "
            f"author's voice.\n\nPost:\n{request.original_post.strip()}\n\nFeedback:\n{feedback}"
        )

    def validate(self, request: ImprovePostRequest) -> None:
        _require_text(request.original_post, "original_post")
        if not request.feedback:
            raise ValidationError("At least one feedback point is required")

    def estimate(self, request: ImprovePostRequest) -> Decimal:
        return IMPROVE_POST_ESTIMATE

    async def execute(self, request: ImprovePostRequest, job: JobContext) -> JobOutcome:
        reporter = job.reporter
        points = len(request.feedback)

        reporter.emit("improve", "Improving post...", 40)
        prompt = self.build_prompt(request)
        result = await self.text_generator.generate(prompt, system=SYSTEM_PROMPT)
        cost = text_generation_cost(result, prompt)
        job.bill(
            Service.TEXT_GEN,
            "improve_post",
            cost,
            tokens_used=result.tokens_used,
            metadata={"model": result.model_name, "feedbackPoints": points},
        )
        reporter.emit("improve", "Post improved", 80, {"cost": str(cost)})

        fields: Dict[str, Any] = {"content": result.content}
        if request.artifact_id is None:
            fields = {
                "source_type": "ai_research",
                "source_data": {"improvedFrom": request.original_post},
            }
        return JobOutcome(
            content=result.content,
            details=f"Applied {points} feedback points",
            artifact_fields=fields,
            artifact_id=request.artifact_id,
        )


def parse_post_scores(text: str) -> Dict[str, Any]:
    """Parse the analyst's JSON answer into scores, overall score and suggestions.

    Missing or non-numeric scores count as 0; values are clamped to 0-10.
    The overall score is the mean of all criteria, to one decimal.

    Raises:
        ProviderError: If the answer is not a JSON object
    """
    try:
        data = json.loads(_CODE_FENCE.sub("", text.strip()))
    except json.JSONDecodeError as e:
        raise ProviderError(f"Post analysis returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError("Post analysis returned no JSON object")

    raw_scores = data.get("scores") if isinstance(data.get("scores"), dict) else {}
    scores = {}
    for key in SCORE_CRITERIA:
        try:
            value = float(raw_scores.get(key, 0))
        except (TypeError, ValueError):
            value = 0.0
        scores[key] = min(max(value, 0.0), 10.0)

    suggestions = data.get("suggestions") or []
    if not isinstance(suggestions, list):
        suggestions = [suggestions]

    return {
        "scores": scores,
        "overallScore": round(sum(scores.values()) / len(scores), 1),
        "suggestions": [str(s) for s in suggestions if str(s).strip()],
    }


class PostAnalysisJob(JobOrchestrator):
    """Scores a post on engagement criteria. Stores no artifact."""

    process_type = "post_analysis"

    def __init__(self, text_generator: TextGenerator, **kwargs):
        super().__init__(**kwargs)
        self.text_generator = text_generator

    @staticmethod
    def build_prompt(request: PostAnalysisRequest) -> str:
        criteria = "\n".join(
            f"{i}. {description}" for i, description in enumerate(SCORE_CRITERIA.values(), 1)
        )
        keys = ", ".join(SCORE_CRITERIA)
        return (
            f"Analyze this LinkedIn post and provide scores (0-10) for:\n\n{criteria}\n\n"
            f"POST:\n{request.post.strip()}\n\n"
            f'Return JSON with "scores" (keys: {keys}) and "suggestions", '
            "a list of brief improvement suggestions."
        )

    def validate(self, request: PostAnalysisRequest) -> None:
        _require_text(request.post, "post")

    def estimate(self, request: PostAnalysisRequest) -> Decimal:
        return _estimate_for(self.text_generator, self.build_prompt(request), system=ANALYST_PROMPT)

    async def execute(self, request: PostAnalysisRequest, job: JobContext) -> JobOutcome:
        reporter = job.reporter

        reporter.emit("analyze", "Scoring post...", 40)
        prompt = self.build_prompt(request)
        result = await self.text_generator.generate(prompt, system=ANALYST_PROMPT)
        cost = text_generation_cost(result, prompt)
        # Billed before parsing; a malformed answer was still paid for
        job.bill(
            Service.TEXT_GEN,
            "analyze_post",
            cost,
            tokens_used=result.tokens_used,
            metadata={"model": result.model_name},
        )
        analysis = parse_post_scores(result.content)
        reporter.emit("analyze", f"Overall score {analysis['overallScore']}", 80, {
            "overallScore": analysis["overallScore"],
            "cost": str(cost),
        })

        return JobOutcome(
            content=result.content,
            details=f"Analyzed post: {request.post.strip()[:50]}",
            payload={"analysis": analysis},
            store_artifact=False,
        )

    def complete_payload(self, outcome: JobOutcome, artifact_id: Optional[int], job: JobContext) -> Dict[str, Any]:
        return {
            "analysis": outcome.payload["analysis"],
            "cost": str(job.total_cost),
            "jobId": job.job_id,
        }
