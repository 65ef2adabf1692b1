"""
Provider adapters for Content Forge.

Concrete implementations of the text, image, transcription, download
and photo search interfaces used by the job orchestrators.
"""

from .downloader import YtDlpDownloader
from .openai_client import OpenAIImageGenerator, OpenAITextGenerator, OpenAITranscriber
from .pexels import PexelsPhotoSearch

__all__ = [
    "OpenAIImageGenerator",
    "OpenAITextGenerator",
    "OpenAITranscriber",
    "PexelsPhotoSearch",
    "YtDlpDownloader",
]
