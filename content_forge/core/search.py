"""Stock photo search with ledger accounting."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List

from .errors import ValidationError
from .interfaces import PhotoSearch, StockPhoto
from .pricing import PHOTO_SEARCH_COST
from content_forge.storage.models import CostEntry, Service
from content_forge.storage.repository import CostLedger

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 80


class StockPhotoSearch:
    """Runs photo searches and records each successful one in the ledger."""

    def __init__(
        self,
        provider: PhotoSearch,
        ledger: CostLedger,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.provider = provider
        self.ledger = ledger
        self.clock = clock

    async def search(self, query: str, per_page: int = 6) -> List[StockPhoto]:
        """Search photos.

        Raises:
            ValidationError: If query is empty or per_page is out of range
            ProviderError: If the photo library fails
        """
        if not query or not query.strip():
            raise ValidationError("query is required")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise ValidationError(f"perPage must be between 1 and {MAX_PER_PAGE}")

        photos = await self.provider.search(query.strip(), per_page)
        await asyncio.to_thread(self.ledger.append, CostEntry(
            service=Service.SEARCH,
            operation="search_photos",
            cost=PHOTO_SEARCH_COST,
            timestamp=self.clock(),
            metadata={"query": query.strip(), "results": len(photos)},
        ))
        logger.info("Photo search %r returned %d results", query.strip(), len(photos))
        return photos
