import logging
from typing import Optional, Protocol

import httpx

from intake.models import PreviewResult

logger = logging.getLogger(__name__)


class PreviewService(Protocol):
    async def process_preview(self, url: str, email: str) -> PreviewResult: ...


class PreviewRequestFailed(Exception):
    def __init__(self, status_code: int, details: str):
        self.status_code = status_code
        self.details = details
        self.message = f"Preview service responded with {status_code}: {details}"
        super().__init__(self.message)


class HttpPreviewService:
    """Client for the preview-processing service."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient()

    async def process_preview(self, url: str, email: str) -> PreviewResult:
        response = await self.client.post(
            f"{self.base_url}/preview", json={"url": url, "email": email}
        )
        if response.is_error:
            logger.error(f"Preview request failed for {url}: {response.status_code}")
            raise PreviewRequestFailed(response.status_code, response.text[:200])

        result = PreviewResult.model_validate(response.json())
        logger.info(f"Preview created: {url} -> {result.preview_id}")
        return result

    async def aclose(self):
        await self.client.aclose()
