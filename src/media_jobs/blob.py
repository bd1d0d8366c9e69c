"""Project-scoped local blob store.

Artifacts live at ``<root>/<project_id>/<asset_type>/<filename>`` and are
exposed under ``<url_prefix>/<project_id>/<asset_type>/<filename>``.
"""

import logging
import random
import shutil
import string
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class AssetType(str, Enum):
    """Asset folders inside a project."""

    CHARACTERS = "characters"
    SCENES = "scenes"
    OBJECTS = "objects"
    FRAMES = "frames"
    VIDEOS = "videos"
    IMAGES = "images"
    TEMP = "temp"


def generate_asset_filename(extension: str, prefix: Optional[str] = None) -> str:
    """Build a collision-resistant filename without worker coordination.

    Format: ``[prefix_]<epoch ms>_<6 random chars>.<extension>``
    """
    timestamp = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    base_name = f"{prefix}_{timestamp}_{suffix}" if prefix else f"{timestamp}_{suffix}"
    return f"{base_name}.{extension.lstrip('.')}"


def _check_component(part: str) -> None:
    if not part or "/" in part or "\\" in part or part in (".", ".."):
        raise ValueError(f"Invalid blob path component: {part!r}")


class BlobStore:
    """Filesystem-backed artifact store keyed by (project, asset type, filename)."""

    def __init__(self, root: Union[str, Path], url_prefix: str = "/blob"):
        self.root = Path(root)
        self.url_prefix = "/" + url_prefix.strip("/")

    def initialize(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Blob store initialized at %s", self.root)

    def path_for(self, project_id: str, asset_type: Union[AssetType, str], filename: str) -> Path:
        asset_type = AssetType(asset_type)
        _check_component(project_id)
        _check_component(filename)
        return self.root / project_id / asset_type.value / filename

    def url_for(self, project_id: str, asset_type: Union[AssetType, str], filename: str) -> str:
        return f"{self.url_prefix}/{project_id}/{AssetType(asset_type).value}/{filename}"

    def parse_url(self, url: str) -> Optional[Tuple[str, AssetType, str]]:
        """Split a blob URL into (project_id, asset_type, filename).

        Returns None for URLs that do not belong to this store.
        """
        if not url.startswith(self.url_prefix + "/"):
            return None
        parts = url[len(self.url_prefix) + 1:].split("/")
        if len(parts) != 3:
            return None
        project_id, asset_type, filename = parts
        try:
            return project_id, AssetType(asset_type), filename
        except ValueError:
            return None

    def save(
        self,
        project_id: str,
        asset_type: Union[AssetType, str],
        filename: str,
        data: Union[bytes, str],
    ) -> str:
        """Write an artifact and return its public URL."""
        path = self.path_for(project_id, asset_type, filename)
        path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(data, str):
            data = data.encode("utf-8")
        path.write_bytes(data)

        url = self.url_for(project_id, asset_type, filename)
        logger.info("Saved blob: %s (%d bytes)", url, len(data))
        return url

    def get(self, project_id: str, asset_type: Union[AssetType, str], filename: str) -> bytes:
        path = self.path_for(project_id, asset_type, filename)
        return path.read_bytes()

    def delete(self, project_id: str, asset_type: Union[AssetType, str], filename: str) -> None:
        """Remove an artifact; a missing file is not an error."""
        path = self.path_for(project_id, asset_type, filename)
        try:
            path.unlink()
            logger.info("Deleted blob: %s", self.url_for(project_id, asset_type, filename))
        except FileNotFoundError:
            pass

    def exists(self, project_id: str, asset_type: Union[AssetType, str], filename: str) -> bool:
        return self.path_for(project_id, asset_type, filename).is_file()

    def info(self, project_id: str, asset_type: Union[AssetType, str], filename: str) -> Dict[str, Any]:
        """Return size, timestamps and URL of an artifact.

        Raises:
            FileNotFoundError: If the artifact does not exist
        """
        path = self.path_for(project_id, asset_type, filename)
        stats = path.stat()
        return {
            "size": stats.st_size,
            "created": datetime.fromtimestamp(stats.st_ctime),
            "modified": datetime.fromtimestamp(stats.st_mtime),
            "url": self.url_for(project_id, asset_type, filename),
        }

    def cleanup_project(self, project_id: str) -> None:
        """Recursively remove every asset of a project."""
        _check_component(project_id)
        project_path = self.root / project_id
        shutil.rmtree(project_path, ignore_errors=True)
        logger.info("Cleaned up blobs for project: %s", project_id)
