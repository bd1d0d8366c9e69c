"""Generation provider contracts and an HTTP queue adapter.

Workers depend only on the abstract providers. ``HttpGenerationProvider``
talks to a submit/poll style queue API (fal.ai compatible): POST the input
to ``<base_url>/<model>``, poll ``status_url`` until ``COMPLETED`` and read
the result from ``response_url``.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .errors import ProviderError
from .models import ProviderConfig

logger = logging.getLogger(__name__)


class ImageProvider(ABC):
    @abstractmethod
    async def create_image(self, prompt: str, options: Dict[str, Any]) -> str:
        """Generate an image from scratch and return its URL."""

    @abstractmethod
    async def transform_image(self, prompt: str, source_url: str, options: Dict[str, Any]) -> str:
        """Generate an image from an existing one and return its URL."""


class VideoProvider(ABC):
    @abstractmethod
    async def create_video(self, prompt: str, options: Dict[str, Any]) -> str:
        """Text-to-video; returns the video URL."""

    @abstractmethod
    async def animate_image(self, prompt: str, image_url: str, options: Dict[str, Any]) -> str:
        """Image-to-video; returns the video URL."""


class TextProvider(ABC):
    @abstractmethod
    async def generate_text(self, prompt: str, options: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    async def revise_text(self, prompt: str, source_text: str, options: Dict[str, Any]) -> str:
        pass


def extract_artifact_url(data: Any) -> Optional[str]:
    """Find the artifact URL in a provider result.

    Checked in order: video.url, video_url, image.url, images[0].url, url,
    output.url, output.
    """
    if not isinstance(data, dict):
        return None

    candidates = [
        (data.get("video") or {}).get("url") if isinstance(data.get("video"), dict) else data.get("video"),
        data.get("video_url"),
        (data.get("image") or {}).get("url") if isinstance(data.get("image"), dict) else None,
    ]
    images = data.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        candidates.append(images[0].get("url"))
    candidates.append(data.get("url"))

    output = data.get("output")
    candidates.append(output.get("url") if isinstance(output, dict) else output)

    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


class HttpGenerationProvider(ImageProvider, VideoProvider, TextProvider):
    """Submit/poll client for a hosted generation queue."""

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            api_key = os.environ.get(self.config.api_key_env)
            if api_key:
                headers["Authorization"] = f"Key {api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.request_timeout_s,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    async def create_image(self, prompt, options):
        result = await self.run(self.config.image_create_model, {"prompt": prompt, **options})
        return self._require_url(result, self.config.image_create_model)

    async def transform_image(self, prompt, source_url, options):
        payload = {"prompt": prompt, "image_url": source_url, **options}
        result = await self.run(self.config.image_transform_model, payload)
        return self._require_url(result, self.config.image_transform_model)

    async def create_video(self, prompt, options):
        result = await self.run(self.config.video_create_model, {"prompt": prompt, **options})
        return self._require_url(result, self.config.video_create_model)

    async def animate_image(self, prompt, image_url, options):
        payload = {"prompt": prompt, "image_url": image_url, **options}
        result = await self.run(self.config.video_transform_model, payload)
        return self._require_url(result, self.config.video_transform_model)

    async def generate_text(self, prompt, options):
        result = await self.run(self.config.text_model, {"prompt": prompt, **options})
        return self._require_text(result)

    async def revise_text(self, prompt, source_text, options):
        payload = {
            "prompt": f"{prompt}\n\nCurrent version:\n{source_text}",
            **options,
        }
        result = await self.run(self.config.text_model, payload)
        return self._require_text(result)

    # ------------------------------------------------------------------
    # Queue protocol
    # ------------------------------------------------------------------

    async def run(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a request and wait for its result.

        Raises:
            ProviderError: On HTTP errors, provider-reported errors or timeout
        """
        logger.info("Submitting %s request: %.50s", model, payload.get("prompt", ""))
        submitted = await self._request("POST", f"/{model}", json=payload)

        request_id = submitted.get("request_id")
        if not request_id:
            # Synchronous endpoints answer with the result directly
            return submitted

        status_url = submitted.get("status_url") or f"/{model}/requests/{request_id}/status"
        response_url = submitted.get("response_url") or f"/{model}/requests/{request_id}"

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.max_wait_s
        while loop.time() < deadline:
            status = await self._request("GET", status_url)
            state = status.get("status")
            logger.debug("Request %s status: %s", request_id, state)

            if state == "COMPLETED":
                return await self._request("GET", response_url)
            if status.get("error"):
                raise ProviderError(f"Generation failed: {status['error']}")

            await asyncio.sleep(self.config.poll_interval_s)

        raise ProviderError(f"Generation timed out after {self.config.max_wait_s:.0f}s")

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            # 4xx other than rate limiting will not get better on retry
            retryable = code >= 500 or code == 429
            raise ProviderError(f"Provider returned HTTP {code} for {url}", retryable=retryable) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider request failed: {e}") from e
        return response.json()

    def _require_url(self, result: Dict[str, Any], model: str) -> str:
        url = extract_artifact_url(result)
        if not url:
            logger.error("No artifact URL in %s response: %s", model, result)
            raise ProviderError(f"No artifact URL found in {model} result")
        return url

    def _require_text(self, result: Dict[str, Any]) -> str:
        for key in ("output", "text", "content"):
            value = result.get(key)
            if isinstance(value, str) and value:
                return value
        raise ProviderError("No text found in provider result")
