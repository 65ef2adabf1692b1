"""
Pexels stock photo search.

One GET per search against the Pexels REST API. Failures become
ProviderError; an unconfigured key is reported the same way rather than
as an empty result.
"""

import logging
import os
from typing import List, Optional

import httpx

from ..core.errors import ProviderError, ValidationError
from ..core.interfaces import StockPhoto

logger = logging.getLogger(__name__)

PROVIDER = "pexels"
PEXELS_BASE_URL = "https://api.pexels.com/v1"
PHOTO_SIZES = ("original", "large", "medium", "small")


class PexelsPhotoSearch:
    """Landscape photo search. The key is read from PEXELS_API_KEY if not given."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = PEXELS_BASE_URL,
        timeout: float = 10.0,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("PEXELS_API_KEY", "")
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def search(self, query: str, per_page: int = 6) -> List[StockPhoto]:
        """Search photos matching query.

        Raises:
            ValidationError: If query is empty
            ProviderError: If the key is missing or the request fails
        """
        if not query or not query.strip():
            raise ValidationError("query is required and cannot be empty")
        if not self.api_key:
            raise ProviderError("PEXELS_API_KEY not configured", provider=PROVIDER)

        params = {"query": query.strip(), "per_page": per_page, "orientation": "landscape"}
        headers = {"Authorization": self.api_key}
        url = f"{self.base_url}/search"
        try:
            if self.client is not None:
                response = await self.client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Pexels search failed with HTTP %s", e.response.status_code)
            raise ProviderError(
                f"Pexels search failed: HTTP {e.response.status_code}", provider=PROVIDER
            ) from e
        except httpx.HTTPError as e:
            logger.error("Pexels search failed: %s", e)
            raise ProviderError(f"Pexels search failed: {e}", provider=PROVIDER) from e
        except ValueError as e:
            raise ProviderError("Pexels returned invalid JSON", provider=PROVIDER) from e

        return [_to_photo(item) for item in data.get("photos", [])]


def _to_photo(item: dict) -> StockPhoto:
    src = item.get("src") or {}
    return StockPhoto(
        id=int(item["id"]),
        url=item.get("url", ""),
        photographer=item.get("photographer", ""),
        src={size: src[size] for size in PHOTO_SIZES if size in src},
    )
