"""
Error taxonomy for Content Forge.

Validation and budget errors are raised before any external call is made.
Provider errors come from hosted AI services or the downloader and are
handled at the orchestrator boundary. Persistence errors wrap storage
failures so a job never reports an unrecorded cost as free.
"""

from typing import Optional


class ContentForgeError(Exception):
    """Base class for all Content Forge errors."""


class ValidationError(ContentForgeError, ValueError):
    """Bad caller input, e.g. a missing field or a negative cost."""


class BudgetExceeded(ContentForgeError):
    """Raised when the budget policy denies an operation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ProviderError(ContentForgeError):
    """An external provider failed (quota, auth, network, bad response)."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class TranscriptionError(ProviderError):
    """Audio transcription failed."""


class DownloadError(ProviderError):
    """Fetching remote media failed."""


class PersistenceError(ContentForgeError):
    """Writing to the ledger or artifact store failed."""
