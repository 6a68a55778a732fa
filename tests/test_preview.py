import json

import httpx
import pytest

from intake.preview import HttpPreviewService, PreviewRequestFailed

PREVIEW_BASE_URL = "http://preview.internal/"
CANONICAL_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def make_service(handler) -> HttpPreviewService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPreviewService(PREVIEW_BASE_URL, client=client)


@pytest.mark.asyncio
async def test_process_preview_success():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"previewId": "prev_123", "pricing": {"suggested_price_usd": 12.0}},
        )

    service = make_service(handler)
    result = await service.process_preview(CANONICAL_URL, "viewer@gmail.com")
    await service.aclose()

    assert result.preview_id == "prev_123"
    assert result.pricing.suggested_price_usd == 12.0
    assert str(requests[0].url) == "http://preview.internal/preview"
    assert json.loads(requests[0].content) == {
        "url": CANONICAL_URL,
        "email": "viewer@gmail.com",
    }


@pytest.mark.asyncio
async def test_process_preview_without_pricing():
    service = make_service(lambda request: httpx.Response(200, json={"previewId": "p1"}))

    result = await service.process_preview(CANONICAL_URL, "viewer@gmail.com")

    assert result.pricing.suggested_price_usd is None


@pytest.mark.asyncio
async def test_process_preview_error_status():
    service = make_service(lambda request: httpx.Response(502, text="bad gateway"))

    with pytest.raises(PreviewRequestFailed) as exc_info:
        await service.process_preview(CANONICAL_URL, "viewer@gmail.com")

    assert exc_info.value.status_code == 502
    assert "bad gateway" in exc_info.value.message
