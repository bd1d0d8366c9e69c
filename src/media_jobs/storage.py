"""Durable storage collaborators for finished artifacts.

``BlobStoreStorage`` keeps artifacts in the local blob store; ``S3Storage``
uploads to any S3-compatible bucket (AWS, R2, B2) through boto3.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .blob import AssetType, BlobStore
from .errors import StorageError
from .models import StorageConfig

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    url: str
    path: str
    size: int


class DurableStorage(ABC):
    """Upload target for artifacts that must outlive the job."""

    @abstractmethod
    def upload(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        config: Optional[StorageConfig] = None,
        project_id: Optional[str] = None,
    ) -> UploadResult:
        """Persist bytes and return their public location.

        Raises:
            StorageError: If the upload fails
        """
        pass


class BlobStoreStorage(DurableStorage):
    """Durable storage backed by the local blob store."""

    def __init__(self, blob_store: BlobStore, asset_type: AssetType = AssetType.VIDEOS):
        self.blob_store = blob_store
        self.asset_type = asset_type

    def upload(self, data, filename, mime_type, config=None, project_id=None) -> UploadResult:
        if not project_id:
            raise StorageError("Blob storage uploads require a project id", retryable=False)
        try:
            url = self.blob_store.save(project_id, self.asset_type, filename, data)
        except OSError as e:
            raise StorageError(f"Failed to save blob file: {e}") from e

        path = self.blob_store.path_for(project_id, self.asset_type, filename)
        return UploadResult(url=url, path=str(path), size=len(data))


class S3Storage(DurableStorage):
    """S3-compatible bucket storage."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self.client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=os.environ.get(config.access_key_env),
            aws_secret_access_key=os.environ.get(config.secret_key_env),
        )

    def upload(self, data, filename, mime_type, config=None, project_id=None) -> UploadResult:
        config = config or self.config
        parts = [p for p in (config.folder, project_id, filename) if p]
        key = "/".join(parts)

        try:
            self.client.put_object(
                Bucket=config.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload file: {e}") from e

        logger.info("Uploaded file: %s (%d bytes)", key, len(data))
        return UploadResult(url=self.public_url(key, config), path=key, size=len(data))

    def public_url(self, key: str, config: Optional[StorageConfig] = None) -> str:
        config = config or self.config
        if config.public_url_base:
            return f"{config.public_url_base.rstrip('/')}/{key}"
        if config.endpoint_url:
            return f"{config.endpoint_url.rstrip('/')}/{config.bucket}/{key}"
        return f"https://{config.bucket}.s3.amazonaws.com/{key}"


def create_storage(config: StorageConfig, blob_store: BlobStore) -> DurableStorage:
    if config.backend == "s3":
        return S3Storage(config)
    return BlobStoreStorage(blob_store)
