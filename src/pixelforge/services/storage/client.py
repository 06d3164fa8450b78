"""Object storage client for user uploads and generated images."""

import base64
import re
from typing import Optional

import httpx

from pixelforge.services.exceptions import (
    PermanentError,
    StorageAuthError,
    StorageNetworkError,
    StorageNotFoundError,
    TransientError,
)

DATA_URI_PATTERN = re.compile(r"^data:(image/[^;]+);base64,(.+)$", re.DOTALL)


def parse_data_uri(value: str) -> Optional[tuple[str, str]]:
    """Split a data:image/...;base64 URI into (mime_type, base64_data)."""
    match = DATA_URI_PATTERN.match(value)
    if not match:
        return None
    return match.group(1), match.group(2)


def encode_image(ref: str, content: bytes, content_type: Optional[str] = None) -> dict:
    """Encode downloaded content into the inline image shape the AI backend accepts.

    Content that is itself a base64 data URI (uploads stored as text) is parsed
    rather than encoded twice. Anything else is treated as binary.

    Returns:
        {ref, base64_data, mime_type, size}
    """
    head = content[:64]
    if head.startswith(b"data:image/"):
        parsed = parse_data_uri(content.decode("utf-8", errors="ignore").strip())
        if parsed:
            mime_type, data = parsed
            return {"ref": ref, "base64_data": data, "mime_type": mime_type, "size": len(data)}

    data = base64.b64encode(content).decode("ascii")
    mime_type = content_type if content_type and content_type.startswith("image/") else "image/jpeg"
    return {"ref": ref, "base64_data": data, "mime_type": mime_type, "size": len(data)}


def generated_image_path(
    task_type: str, task_id: str, index: int, prefix: str = "generated", extension: str = "png"
) -> str:
    """Deterministic storage path for the n-th output of a task (1-based).

    Re-running a step writes to the same paths, so retries never duplicate objects.
    """
    return f"{prefix}/{task_type}/{task_id}/{index}.{extension}"


class StorageClient:
    """HTTP object storage client (S3/COS-compatible PUT/GET gateway)."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0):
        """Initialize storage client.

        Args:
            base_url: Bucket base URL, objects live at {base_url}/{path}
            api_key: Bearer token for the storage gateway
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        """Error classification shared by downloads and uploads."""
        if response.status_code == 429:
            raise TransientError(f"Rate limit exceeded while {what}: {response.text}")
        elif response.status_code in (500, 502, 503, 504):
            raise StorageNetworkError(
                f"Storage unavailable ({response.status_code}) while {what}: {response.text}"
            )
        elif response.status_code in (401, 403):
            raise StorageAuthError(
                f"Access denied ({response.status_code}) while {what}. "
                "Check STORAGE_API_KEY configuration in .env file."
            )
        elif response.status_code == 404:
            raise StorageNotFoundError(f"Object not found while {what}")
        elif response.status_code >= 400:
            raise PermanentError(f"Bad request ({response.status_code}) while {what}: {response.text}")

    async def download(self, ref: str) -> tuple[bytes, Optional[str]]:
        """Fetch an object by storage path or absolute URL.

        Args:
            ref: Storage path, http(s) URL, or inline data URI

        Returns:
            Tuple of (content bytes, content type)

        Raises:
            TransientError: Network timeout, rate limit (429), service unavailable (5xx)
            PermanentError: Access denied (401/403), missing object (404)
        """
        if ref.startswith("data:"):
            return ref.encode("utf-8"), None

        url = ref if ref.startswith(("http://", "https://")) else self.public_url(ref)
        headers = self.headers if url.startswith(self.base_url) else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise StorageNetworkError(f"Download timeout after {self.timeout:.0f}s: {str(e)}")
        except httpx.HTTPError as e:
            raise StorageNetworkError(f"Network error: {str(e)}")

        self._raise_for_status(response, f"downloading {ref}")
        return response.content, response.headers.get("content-type")

    async def upload(self, path: str, content: bytes, content_type: str = "image/png") -> str:
        """Store an object at a path, overwriting any previous object there.

        Args:
            path: Destination path inside the bucket
            content: Object bytes
            content_type: MIME type of the object

        Returns:
            Public URL of the stored object

        Raises:
            TransientError: Network timeout, rate limit (429), service unavailable (5xx)
            PermanentError: Access denied (401/403), bad request (4xx)
        """
        url = self.public_url(path)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.put(
                    url,
                    content=content,
                    headers={**self.headers, "Content-Type": content_type},
                )
        except httpx.TimeoutException as e:
            raise StorageNetworkError(f"Upload timeout after {self.timeout:.0f}s: {str(e)}")
        except httpx.HTTPError as e:
            raise StorageNetworkError(f"Network error: {str(e)}")

        self._raise_for_status(response, f"uploading {path}")
        return url

    async def store_generated(self, image_url: str, path: str) -> str:
        """Copy one AI output (remote URL or data URI) to its deterministic path.

        Returns:
            Public URL of the stored copy
        """
        parsed = parse_data_uri(image_url)
        if parsed:
            mime_type, data = parsed
            return await self.upload(path, base64.b64decode(data), mime_type)

        content, content_type = await self.download(image_url)
        return await self.upload(path, content, content_type or "image/png")
