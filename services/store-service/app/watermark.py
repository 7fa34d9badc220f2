import httpx

from . import config


class WatermarkError(Exception):
    pass


class WatermarkClient:
    """Client for the image transform service (watermark overlay + JPEG re-encode)."""

    def __init__(self, http: httpx.AsyncClient, base_url: str = config.WATERMARK_SERVICE_URL):
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def apply(self, data: bytes, content_type: str) -> bytes:
        try:
            r = await self._http.post(
                f"{self._base_url}/watermark",
                content=data,
                headers={"Content-Type": content_type or "application/octet-stream"},
                timeout=config.WATERMARK_TIMEOUT,
            )
        except httpx.TimeoutException:
            raise WatermarkError("Watermark service timeout")
        except httpx.RequestError:
            raise WatermarkError("Watermark service unavailable")

        if r.status_code != 200:
            raise WatermarkError(f"Watermark service returned {r.status_code}")
        if not r.content:
            raise WatermarkError("Watermark service returned an empty image")
        return r.content
