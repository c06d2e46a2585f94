"""
Object store access for certification photos.

Features:
- Local filesystem store laid out as {base_path}/{bucket}/{path}
- Public HTTP store for buckets served over https
- Uniform "not found" signalling for both backends
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests

from haru_backend.core.config import StorageSettings
from haru_backend.storage.locator import StorageLocation

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Object could not be read from the store."""


class ObjectNotFoundError(StorageError):
    """Referenced object does not exist."""


class ObjectStore:
    """Read-only view of an object store."""

    def exists(self, location: StorageLocation) -> bool:
        raise NotImplementedError

    def download(self, location: StorageLocation) -> bytes:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """
    Filesystem-backed store.

    Usage:
        store = LocalObjectStore("storage")
        data = store.download(StorageLocation("certifications", "u1/photo.jpg"))
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).resolve()

    def _resolve(self, location: StorageLocation) -> Path:
        target = (self.base_path / location.bucket / location.path).resolve()
        # Keep lookups inside the store root
        if self.base_path not in target.parents:
            raise ObjectNotFoundError(f"Object outside store root: {location}")
        return target

    def exists(self, location: StorageLocation) -> bool:
        try:
            return self._resolve(location).is_file()
        except ObjectNotFoundError:
            return False

    def download(self, location: StorageLocation) -> bytes:
        path = self._resolve(location)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object does not exist: {location}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {location}: {e}") from e


class HttpObjectStore(ObjectStore):
    """Store that fetches publicly served objects over HTTPS."""

    def __init__(
        self,
        host: str = "storage.googleapis.com",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None
    ):
        self.host = host
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, location: StorageLocation) -> str:
        return f"https://{self.host}/{location.bucket}/{quote(location.path)}"

    def exists(self, location: StorageLocation) -> bool:
        try:
            response = self.session.head(self.url_for(location), timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"HEAD failed for {location}: {e}")
            return False
        return response.status_code == 200

    def download(self, location: StorageLocation) -> bytes:
        url = self.url_for(location)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageError(f"Failed to download {url}: {e}") from e

        if response.status_code == 404:
            raise ObjectNotFoundError(f"Object does not exist: {location}")
        if response.status_code >= 400:
            raise StorageError(f"Download of {url} failed with HTTP {response.status_code}")

        return response.content


def build_object_store(settings: StorageSettings) -> ObjectStore:
    """Create the store selected by settings.storage.type."""
    if settings.type == "local":
        return LocalObjectStore(settings.base_path)
    if settings.type == "http":
        return HttpObjectStore(host=settings.public_host, timeout=settings.timeout)
    raise ValueError(f"Unknown storage type: {settings.type}")
