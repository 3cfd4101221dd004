"""
File storage for QR card images and inspection/issue photos.
"""

import hashlib
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.config import settings
from ..core.logging_config import get_permit_logger

logger = get_permit_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class StorageError(Exception):
    pass


class FileStorageService:
    """Stores files under a root directory and serves them from a base URL"""

    def __init__(self, storage_path: Optional[str] = None, base_url: Optional[str] = None):
        self.storage_path = Path(storage_path or settings.FILE_STORAGE_PATH)
        self.base_url = (base_url if base_url is not None else settings.FILE_BASE_URL).rstrip("/")

    def organized_path(self, municipality_id: str, folder: str, filename: str) -> str:
        """municipality/folder/YYYY/MM/timestamp-filename"""
        now = datetime.utcnow()
        safe_name = _UNSAFE.sub("_", filename).strip("_") or "file"
        return f"{municipality_id}/{folder}/{now.year}/{now.month:02d}/{now.strftime('%Y%m%d%H%M%S%f')}-{safe_name}"

    def _resolve(self, relative_path: str) -> Path:
        root = self.storage_path.resolve()
        file_path = (root / relative_path).resolve()
        if root != file_path and root not in file_path.parents:
            raise StorageError(f"Path escapes storage root: {relative_path}")
        return file_path

    async def upload_file(self, data: bytes, relative_path: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """
        Write ``data`` to ``relative_path``.

        Returns:
            dict with the public ``url``, the sha256 ``hash`` and the stored ``path``
        """
        file_path = self._resolve(relative_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(data)

        checksum = hashlib.sha256(data).hexdigest()
        logger.debug("Stored file", path=relative_path, size=len(data),
                     content_type=(metadata or {}).get("content_type"))
        return {
            "url": f"{self.base_url}/{relative_path}",
            "hash": checksum,
            "path": relative_path,
        }

    async def delete_file(self, relative_path: str) -> bool:
        """Delete a stored file; a missing file is not an error"""
        file_path = self._resolve(relative_path)
        if file_path.exists():
            file_path.unlink()
            return True
        return False


storage_service = FileStorageService()
