import asyncio
import logging
import os

import requests
from fastapi.concurrency import run_in_threadpool

from ..config import Settings
from ..exceptions import CollaboratorUnavailable

logger = logging.getLogger(__name__)

UPLOADS = "uploads"
SIGNED_DOCS = "signed_docs"


class LocalStorage:
    """Stores files on the local filesystem (development and tests)."""

    def __init__(self, base_dir: str = UPLOADS):
        self.base_dir = base_dir

    def _folder(self, folder: str) -> str:
        path = os.path.join(self.base_dir, folder)
        os.makedirs(path, exist_ok=True)
        return path

    async def upload_file(self, content: bytes, filename: str, folder: str = UPLOADS) -> str:
        """
        Save ``content`` under ``folder`` and return its path, which doubles as
        the document URL in local mode.
        """
        file_path = os.path.join(self._folder(folder), filename)
        with open(file_path, "wb") as f:
            f.write(content)
        return file_path

    async def download_file(self, file_path: str) -> bytes:
        with open(file_path, "rb") as f:
            return f.read()

    async def delete_file(self, file_path: str) -> bool:
        if os.path.exists(file_path):
            os.remove(file_path)
            return True
        return False


class BlobStorage:
    """Stores files in Vercel Blob; returns public blob URLs."""

    def __init__(self, token: str, timeout: float = 20.0):
        import vercel_blob

        self._blob = vercel_blob
        self.token = token
        self.timeout = timeout

    async def upload_file(self, content: bytes, filename: str, folder: str = UPLOADS) -> str:
        blob_path = f"{folder}/{filename}"
        result = await run_in_threadpool(
            self._blob.put, blob_path, content, {"token": self.token}
        )
        return result["url"]

    async def download_file(self, url: str) -> bytes:
        response = await run_in_threadpool(requests.get, url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    async def delete_file(self, url: str) -> bool:
        await run_in_threadpool(self._blob.delete, url, {"token": self.token})
        return True


class ObjectStorage:
    """Wraps a backend with bounded timeouts and uniform error reporting."""

    def __init__(self, backend, timeout: float = 20.0):
        self.backend = backend
        self.timeout = timeout

    async def upload_file(self, content: bytes, filename: str, folder: str = UPLOADS) -> str:
        try:
            return await asyncio.wait_for(self.backend.upload_file(content, filename, folder), self.timeout)
        except Exception as e:
            logger.exception("Upload of %s/%s failed", folder, filename)
            raise CollaboratorUnavailable("File storage is unavailable") from e

    async def download_file(self, file_path: str) -> bytes:
        try:
            return await asyncio.wait_for(self.backend.download_file(file_path), self.timeout)
        except Exception as e:
            logger.exception("Download of %s failed", file_path)
            raise CollaboratorUnavailable("File storage is unavailable") from e

    async def delete_file(self, file_path: str) -> bool:
        try:
            return await asyncio.wait_for(self.backend.delete_file(file_path), self.timeout)
        except Exception:
            logger.exception("Error deleting file %s", file_path)
            return False


def build_storage(settings: Settings) -> ObjectStorage:
    if settings.blob_token:
        backend = BlobStorage(settings.blob_token, timeout=settings.storage_timeout)
    else:
        backend = LocalStorage(settings.upload_dir)
    return ObjectStorage(backend, timeout=settings.storage_timeout)
