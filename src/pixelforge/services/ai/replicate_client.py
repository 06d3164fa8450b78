"""Replicate API client for image generation with error classification.

The pipeline treats the model as an opaque backend with two entry points:
a synchronous call (isolated workers) and start/poll (polled pipeline).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from pixelforge.services.exceptions import (
    AITimeoutError,
    ContentPolicyError,
    PermanentError,
    ServiceError,
    TransientError,
)

logger = structlog.get_logger()

# Substrings that mark a timeout in SDK / network error messages
TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout", "esockettimedout")


@dataclass
class GenerationResult:
    """Output of one generation call."""

    images: list[dict] = field(default_factory=list)  # [{url, width, height}]
    description: Optional[str] = None
    model: Optional[str] = None


@dataclass
class PredictionStatus:
    """Snapshot of a polled prediction."""

    status: str  # "processing" | "succeeded" | "failed"
    result: Optional[GenerationResult] = None
    error: Optional[str] = None


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ServiceError subclass instance

    Classification rules:
        - Timeout errors → AITimeoutError
        - 429 (rate limit) → TransientError
        - 503 (service unavailable) → TransientError
        - 401/403 (authentication) → PermanentError
        - Content policy violations → ContentPolicyError
        - Connection errors → TransientError
        - Anything else → PermanentError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)) or any(
        marker in error_message_lower for marker in TIMEOUT_MARKERS
    ):
        return AITimeoutError(f"AI call timed out: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return TransientError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return TransientError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return PermanentError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
    ):
        return ContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return TransientError(f"Connection error: {error_message}")

    return PermanentError(f"Permanent error: {error_message}")


def _to_data_uri(image: dict) -> str:
    return f"data:{image.get('mime_type', 'image/jpeg')};base64,{image['base64_data']}"


def _normalize_output(output: Any, model: str) -> GenerationResult:
    """Convert SDK output (URL, FileOutput, list or dict) into a GenerationResult."""
    description = None
    if isinstance(output, dict):
        description = output.get("text") or output.get("description")
        output = output.get("images") or output.get("output") or []

    items = output if isinstance(output, (list, tuple)) else [output]
    images = []
    for item in items:
        if item is None:
            continue
        if isinstance(item, str) and not item.startswith(("http", "data:")):
            # Text chunk from multimodal models
            description = f"{description or ''}{item}"
            continue
        url = getattr(item, "url", item)
        images.append({"url": str(url), "width": 1024, "height": 1024})

    if not images:
        raise PermanentError(f"Unexpected output format from Replicate: {type(output)}")

    return GenerationResult(images=images, description=description or None, model=model)


class ReplicateClient:
    """Async facade over the synchronous Replicate SDK."""

    def __init__(self, api_token: str, default_model: str, timeout_seconds: float = 50.0):
        """Initialize Replicate client.

        Args:
            api_token: Replicate API token (from REPLICATE_API_TOKEN env var)
            default_model: Model used when no AIModelConfig row is active
            timeout_seconds: Budget for one synchronous call
        """
        self.api_token = api_token
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self._client = replicate.Client(api_token=api_token) if api_token else None

    def _require_client(self) -> "replicate.Client":
        if self._client is None:
            raise PermanentError("REPLICATE_API_TOKEN not configured")
        return self._client

    @staticmethod
    def _build_input(prompt: str, images: list[dict], count: int) -> dict[str, Any]:
        payload: dict[str, Any] = {"prompt": prompt, "output_format": "png"}
        if images:
            payload["image_input"] = [_to_data_uri(img) for img in images if img.get("base64_data")]
        if count > 1:
            payload["num_outputs"] = count
        return payload

    async def generate(
        self,
        prompt: str,
        images: list[dict],
        model_ref: Optional[str] = None,
        count: int = 1,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Run the model and wait for its output.

        Args:
            prompt: Text prompt
            images: Downloaded input images ({ref, base64_data, mime_type, size})
            model_ref: Replicate model ("owner/name" or "owner/name:version")
            count: Number of images requested
            timeout: Override for the call budget in seconds

        Returns:
            GenerationResult with image URLs and optional text description

        Raises:
            AITimeoutError: Call exceeded its budget
            TransientError: Temporary failure, may succeed on retry
            PermanentError: Permanent failure, should not retry
        """
        client = self._require_client()
        model = model_ref or self.default_model
        payload = self._build_input(prompt, images, count)

        logger.info("ai.generate.started", model=model, input_images=len(images), count=count)
        try:
            output = await asyncio.wait_for(
                asyncio.to_thread(client.run, model, input=payload),
                timeout=timeout or self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise AITimeoutError(
                f"AI call timed out after {timeout or self.timeout_seconds:.0f} seconds"
            ) from e
        except ServiceError:
            raise
        except (ReplicateAPIError, ConnectionError, OSError) as e:
            raise classify_error(e) from e
        except Exception as e:
            # Unexpected errors - treat as permanent to avoid infinite retries
            raise PermanentError(f"Unexpected error: {e}") from e

        result = _normalize_output(output, model)
        logger.info("ai.generate.succeeded", model=model, images=len(result.images))
        return result

    async def start_prediction(
        self, prompt: str, images: list[dict], model_ref: Optional[str] = None, count: int = 1
    ) -> str:
        """Start an asynchronous prediction.

        Returns:
            Prediction id to poll with check_prediction
        """
        client = self._require_client()
        model = model_ref or self.default_model
        payload = self._build_input(prompt, images, count)

        def _create() -> Any:
            if ":" in model:
                _, version = model.split(":", 1)
                return client.predictions.create(version=version, input=payload)
            return client.models.predictions.create(model=model, input=payload)

        try:
            prediction = await asyncio.wait_for(
                asyncio.to_thread(_create), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise AITimeoutError("Starting the prediction timed out") from e
        except (ReplicateAPIError, ConnectionError, OSError) as e:
            raise classify_error(e) from e

        logger.info("ai.prediction.started", model=model, prediction_id=prediction.id)
        return prediction.id

    async def check_prediction(self, prediction_id: str, model: Optional[str] = None) -> PredictionStatus:
        """Poll a prediction started by start_prediction.

        Returns:
            PredictionStatus with status "processing", "succeeded" or "failed"
        """
        client = self._require_client()
        try:
            prediction = await asyncio.wait_for(
                asyncio.to_thread(client.predictions.get, prediction_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise AITimeoutError("Polling the prediction timed out") from e
        except (ReplicateAPIError, ConnectionError, OSError) as e:
            raise classify_error(e) from e

        if prediction.status == "succeeded":
            return PredictionStatus(
                status="succeeded",
                result=_normalize_output(prediction.output, model or self.default_model),
            )
        if prediction.status in ("failed", "canceled"):
            return PredictionStatus(status="failed", error=str(prediction.error or prediction.status))
        return PredictionStatus(status="processing")
