"""Helpers shared by the job processors."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional, Type, TypeVar
from urllib.parse import urlparse

import httpx
import pydantic

from ..blob import BlobStore
from ..errors import DownloadError, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def parse_input(model: Type[ModelT], data: dict) -> ModelT:
    """Validate a job payload, raising our non-retryable ValidationError."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from e


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def url_extension(url: str, default: str) -> str:
    """File extension of a URL path, without the dot."""
    suffix = PurePosixPath(urlparse(url).path).suffix.lstrip(".").lower()
    return suffix if suffix and suffix.isalnum() and len(suffix) <= 5 else default


class ArtifactFetcher:
    """Download artifact bytes, reading local blob URLs straight from the store."""

    def __init__(
        self,
        blob_store: Optional[BlobStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 120.0,
    ):
        self.blob_store = blob_store
        self.timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> bytes:
        """Return the bytes behind ``url``.

        Raises:
            DownloadError: On a non-success response, network failure or missing blob
        """
        if self.blob_store is not None:
            location = self.blob_store.parse_url(url)
            if location is not None:
                return await self._read_blob(url, *location)

        try:
            response = await self.client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DownloadError(f"Failed to download {url}: {e}", url=url) from e

        if not response.is_success:
            code = response.status_code
            raise DownloadError(
                f"Failed to download {url}: HTTP {code}",
                url=url,
                status_code=code,
                retryable=code >= 500 or code == 429,
            )

        logger.debug("Downloaded %s (%d bytes)", url, len(response.content))
        return response.content

    async def _read_blob(self, url, project_id, asset_type, filename) -> bytes:
        try:
            return await asyncio.to_thread(self.blob_store.get, project_id, asset_type, filename)
        except FileNotFoundError as e:
            raise DownloadError(f"Blob not found: {url}", url=url, retryable=False) from e
        except ValueError as e:
            raise DownloadError(f"Invalid blob URL {url}: {e}", url=url, retryable=False) from e
