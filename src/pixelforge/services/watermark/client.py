"""Watermark service client.

Pixel work happens in an external service; this client only ships image
URLs there and returns the stamped bytes.
"""

import httpx

from pixelforge.services.exceptions import PermanentError, TransientError


class WatermarkClient:
    """HTTP client for the server-side watermark service."""

    def __init__(self, service_url: str, text: str, timeout: float = 30.0):
        """Initialize watermark client.

        Args:
            service_url: Base URL of the watermark service (from WATERMARK_SERVICE_URL)
            text: Watermark text stamped on every image
            timeout: Request timeout in seconds
        """
        self.service_url = service_url.rstrip("/")
        self.text = text
        self.timeout = timeout

    async def apply(self, image_url: str) -> bytes:
        """Stamp one image.

        Args:
            image_url: Public URL of the image to stamp

        Returns:
            PNG bytes of the stamped image

        Raises:
            TransientError: Network timeout, rate limit (429), service unavailable (5xx)
            PermanentError: Rejected input (4xx) or missing configuration
        """
        if not self.service_url:
            raise PermanentError("WATERMARK_SERVICE_URL not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.service_url}/watermark",
                    json={"image_url": image_url, "text": self.text, "format": "png"},
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"Watermark timeout after {self.timeout:.0f}s: {str(e)}")
        except httpx.HTTPError as e:
            raise TransientError(f"Network error: {str(e)}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"Watermark service unavailable ({response.status_code}): {response.text}"
            )
        if response.status_code >= 400:
            raise PermanentError(f"Watermark rejected ({response.status_code}): {response.text}")

        return response.content
