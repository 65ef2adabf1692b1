"""
OpenAI-backed providers.

Thin adapters from the async OpenAI client to the text, image and
transcription interfaces. They make exactly one attempt per call and turn
OpenAI failures into ProviderError so the orchestrator can decide on
fallbacks. Cost recording is the orchestrator's job, not theirs.
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from ..core.errors import ProviderError, TranscriptionError, ValidationError
from ..core.interfaces import GeneratedImage, TextGeneration, Transcription

logger = logging.getLogger(__name__)

PROVIDER = "openai"

# Upload limit of the transcription endpoint
MAX_TRANSCRIPTION_BYTES = 25 * 1024 * 1024

DEFAULT_TEXT_MODEL = "gpt-4o-mini"
DEFAULT_IMAGE_MODEL = "gpt-image-1"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"


def _require_model(model: str) -> str:
    if not model or not model.strip():
        raise ValidationError("model is required and cannot be empty")
    return model.strip()


class OpenAITextGenerator:
    """Chat-completions text generator."""

    def __init__(
        self,
        model: str = DEFAULT_TEXT_MODEL,
        client: Optional[AsyncOpenAI] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ):
        """Initialize the generator.

        Args:
            model: OpenAI chat model name
            client: Shared async client, created from the environment if omitted
            temperature: Sampling temperature
            max_tokens: Completion token cap

        Raises:
            ValidationError: If model is empty
        """
        self.model_name = _require_model(model)
        self.client = client or AsyncOpenAI()
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate(self, prompt: str, system: Optional[str] = None) -> TextGeneration:
        """Generate one completion.

        Raises:
            ValidationError: If prompt is empty
            ProviderError: On any OpenAI failure or an empty response
        """
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required and cannot be empty")

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise ProviderError(f"Text generation failed: {e}", provider=PROVIDER) from e

        if not response.choices or not response.choices[0].message.content:
            raise ProviderError("Text generation returned no content", provider=PROVIDER)

        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        if not usage:
            logger.warning("OpenAI response for %s missing usage information", self.model_name)

        return TextGeneration(
            content=response.choices[0].message.content.strip(),
            tokens_used=prompt_tokens + completion_tokens,
            model_name=self.model_name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )


class OpenAIImageGenerator:
    """Image generator returning raw bytes.

    A response without base64 image data yields GeneratedImage(None) so the
    caller can fall back instead of failing.
    """

    def __init__(
        self,
        model: str = DEFAULT_IMAGE_MODEL,
        client: Optional[AsyncOpenAI] = None,
        size: str = "1024x1536",
    ):
        self.model_name = _require_model(model)
        self.client = client or AsyncOpenAI()
        self.size = size

    async def generate(self, prompt: str) -> GeneratedImage:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required and cannot be empty")

        params = {"model": self.model_name, "prompt": prompt, "size": self.size, "n": 1}
        if self.model_name.startswith("dall-e"):
            params["response_format"] = "b64_json"

        try:
            response = await self.client.images.generate(**params)
        except OpenAIError as e:
            raise ProviderError(f"Image generation failed: {e}", provider=PROVIDER) from e

        encoded = response.data[0].b64_json if response.data else None
        if not encoded:
            logger.warning("Image model %s returned no image data", self.model_name)
            return GeneratedImage(image_bytes=None, model_name=self.model_name)

        try:
            image_bytes = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            raise ProviderError(f"Image data could not be decoded: {e}", provider=PROVIDER) from e

        return GeneratedImage(image_bytes=image_bytes, mime_type="image/png", model_name=self.model_name)


class OpenAITranscriber:
    """Speech-to-text using the audio transcription endpoint."""

    def __init__(self, model: str = DEFAULT_TRANSCRIPTION_MODEL, client: Optional[AsyncOpenAI] = None):
        self.model_name = _require_model(model)
        self.client = client or AsyncOpenAI()

    async def transcribe(self, audio_file: Path) -> Transcription:
        """Transcribe a local audio file.

        Duration is taken from the verbose response when the model provides
        one, and drives the per-minute cost.

        Raises:
            TranscriptionError: Missing or oversized file, or any OpenAI failure
        """
        path = Path(audio_file)
        if not path.is_file():
            raise TranscriptionError(f"Audio file not found: {path}", provider=PROVIDER)
        size = path.stat().st_size
        if size > MAX_TRANSCRIPTION_BYTES:
            raise TranscriptionError(
                f"Audio file is {size / (1024 * 1024):.1f}MB, over the 25MB limit",
                provider=PROVIDER,
            )

        response_format = "verbose_json" if self.model_name.startswith("whisper") else "json"
        try:
            with open(path, "rb") as f:
                response = await self.client.audio.transcriptions.create(
                    model=self.model_name,
                    file=f,
                    response_format=response_format,
                )
        except OpenAIError as e:
            raise TranscriptionError(f"Transcription failed: {e}", provider=PROVIDER) from e

        text = (getattr(response, "text", "") or "").strip()
        if not text:
            raise TranscriptionError("Transcription returned no text", provider=PROVIDER)

        duration = getattr(response, "duration", None)
        if not duration:
            logger.warning("Transcription model %s reported no duration", self.model_name)
            return Transcription(text=text)
        return Transcription(text=text, duration_seconds=float(duration))
