"""Image generation adapter for an OpenAI-compatible chat completions API."""
from typing import Optional, Protocol

import httpx
import structlog

from creditflow.config import settings
from creditflow.errors import GenerationRejectedError, TransportError

logger = structlog.get_logger(__name__)

# Status codes worth another attempt; every other 4xx is a rejection
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ImageGenerator(Protocol):
    """External image generation service."""

    async def generate(self, prompt: str, image: Optional[str] = None) -> str:
        """Run one generation and return the raw, unstructured response text.

        Raises:
            TransportError: On timeouts, connection errors and retryable HTTP statuses
            GenerationRejectedError: When the service refuses the request outright
        """
        ...

    async def download(self, url: str) -> tuple[bytes, str]:
        """Fetch a generated image. Returns (data, content_type)."""
        ...


def _as_data_url(image: str) -> str:
    if image.startswith(("data:", "http://", "https://")):
        return image
    return f"data:image/jpeg;base64,{image}"


class OpenAICompatibleGenerator:
    """
    Adapter posting multimodal prompts to /chat/completions.

    The model answers in free text (markdown, HTML or JSON fragments); the
    caller extracts the image reference from it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize generator adapter from settings, with optional overrides."""
        self.base_url = (base_url or settings.generation_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.generation_api_key
        self.model = model or settings.generation_model
        self.timeout = timeout or settings.generation_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def generate(self, prompt: str, image: Optional[str] = None) -> str:
        """
        Request one image generation.

        Args:
            prompt: Fully rendered prompt (style template applied)
            image: Optional source image as URL, data URL or bare base64

        Returns:
            Raw text content of the first choice

        Raises:
            TransportError: On timeouts, connection errors, 408/429/5xx
            GenerationRejectedError: On other 4xx or a malformed body
        """
        content = []
        if image:
            content.append({"type": "image_url", "image_url": {"url": _as_data_url(image)}})
        content.append({"type": "text", "text": prompt})

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "stream": False,
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException as e:
            logger.warning("generation_request_timeout", timeout=self.timeout)
            raise TransportError(f"Generation request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("generation_request_failed", error=str(e))
            raise TransportError(f"Generation request failed: {e}") from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransportError(
                f"Generation service returned HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise GenerationRejectedError(
                f"Generation service rejected the request: HTTP {response.status_code}: {response.text[:200]}",
                {"status_code": response.status_code},
            )

        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationRejectedError("Generation service returned an unexpected response body") from e

    async def download(self, url: str) -> tuple[bytes, str]:
        """
        Download a generated image.

        Raises:
            TransportError: If the image cannot be fetched
        """
        try:
            async with self._client() as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Could not download generated image: {e}") from e

        return response.content, response.headers.get("content-type", "application/octet-stream")
