"""Collaborator interfaces (Protocol classes) the orchestrators depend on.

Orchestrators only see these contracts, never a concrete provider SDK, so
tests can substitute in-memory doubles.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class TextGeneration:
    """Result of one text generation call."""
    content: str
    tokens_used: int
    model_name: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class GeneratedImage:
    """Result of one image generation call. image_bytes is None when the
    provider answered without image data."""
    image_bytes: Optional[bytes]
    mime_type: str = "image/png"
    model_name: Optional[str] = None

    @property
    def has_image(self) -> bool:
        return bool(self.image_bytes)


@dataclass(frozen=True)
class Transcription:
    """Result of one transcription call. duration_seconds is None when the
    provider does not report the clip length."""
    text: str
    duration_seconds: Optional[float] = None


@dataclass(frozen=True)
class InfographicStyle:
    """Layout choice and extracted content for an infographic."""
    template: str
    headline: str
    key_points: List[str] = field(default_factory=list)
    metrics: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class StockPhoto:
    """One stock photo search hit."""
    id: int
    url: str
    photographer: str
    src: Dict[str, str] = field(default_factory=dict)


@runtime_checkable
class TextGenerator(Protocol):
    """Hosted text model."""

    model_name: str

    async def generate(self, prompt: str, system: Optional[str] = None) -> TextGeneration:
        """Generate text. Raises ProviderError on quota, auth or network failure."""
        ...


@runtime_checkable
class ImageGenerator(Protocol):
    """Hosted image model."""

    async def generate(self, prompt: str) -> GeneratedImage:
        """Generate an image. Raises ProviderError on failure."""
        ...


@runtime_checkable
class Transcriber(Protocol):
    """Speech-to-text service."""

    async def transcribe(self, audio_file: Path) -> Transcription:
        """Transcribe a local audio or video file. Raises TranscriptionError."""
        ...


@runtime_checkable
class Downloader(Protocol):
    """Fetches remote media to a local temporary file."""

    async def fetch(self, remote_url: str) -> Path:
        """Download and return the local path. Raises DownloadError."""
        ...


@runtime_checkable
class PhotoSearch(Protocol):
    """Stock photo library."""

    async def search(self, query: str, per_page: int) -> List[StockPhoto]:
        """Search photos. Raises ProviderError when the library is unavailable."""
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Persistence for generated artifacts, independent of the ledger."""

    def create_artifact(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> int:
        ...

    def update_artifact(self, artifact_id: int, fields: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class StyleSelector(Protocol):
    """Chooses an infographic layout for a piece of content."""

    def select(self, content: str) -> InfographicStyle:
        ...
