"""Filesystem-backed object storage for generated images, clips and final videos."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from .errors import StorageError

LOG = logging.getLogger(__name__)

_DOWNLOAD_TIMEOUT_S = 120.0


@dataclass
class FilesystemObjectStore:
    """Writes objects under `root` and addresses them as ``base_url/key``."""

    root: Path
    base_url: str

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_config(cls, config) -> FilesystemObjectStore:
        return cls(root=config.storage_root, base_url=config.storage_base_url)

    def store(self, data: bytes, key: str, mime_type: str) -> str:
        path = self._path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        LOG.debug("Stored %d bytes (%s) at %s", len(data), mime_type, key)
        return f"{self.base_url}/{key.lstrip('/')}"

    def delete(self, url: str) -> bool:
        path = self.local_path(url)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True

    def read(self, url: str) -> bytes:
        path = self.local_path(url)
        if path is None:
            raise StorageError(f"URL is not served by this store: {url}", details={"url": url})
        if not path.exists():
            raise StorageError(f"Object missing for {url}", details={"url": url})
        return path.read_bytes()

    def owns(self, url: str) -> bool:
        return url.startswith(self.base_url + "/")

    def local_path(self, url: str) -> Optional[Path]:
        if not self.owns(url):
            return None
        return self._path_for_key(url[len(self.base_url) + 1 :])

    def _path_for_key(self, key: str) -> Path:
        key = unquote(key).lstrip("/")
        if not key or any(part in ("", ".", "..") for part in key.split("/")):
            raise StorageError(f"Invalid object key: {key!r}", details={"key": key})
        return self.root / key


def object_key(*parts: str, extension: str) -> str:
    """Join key segments and append `extension` (``.mp4``, ``.png``)."""
    return "/".join(p.strip("/") for p in parts if p) + extension


def extension_for(mime_type: str, default: str = ".bin") -> str:
    guessed = mimetypes.guess_extension(mime_type)
    return guessed or default


def content_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fetch_bytes(url: str, *, store: Optional[FilesystemObjectStore] = None, client: Optional[httpx.Client] = None) -> bytes:
    """Load the object behind `url` from the local store, a file URI or over HTTP."""
    if store is not None and store.owns(url):
        return store.read(url)
    parsed = urlparse(url)
    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
        if not path.exists():
            raise StorageError(f"Object missing for {url}", details={"url": url})
        return path.read_bytes()
    if parsed.scheme in ("http", "https"):
        owns_client = client is None
        http = client or httpx.Client(timeout=_DOWNLOAD_TIMEOUT_S, follow_redirects=True)
        try:
            resp = http.get(url)
            resp.raise_for_status()
            return resp.content
        except httpx.HTTPError as exc:
            raise StorageError(f"Download failed for {url}: {exc}", details={"url": url}) from exc
        finally:
            if owns_client:
                http.close()
    raise StorageError(f"Unsupported URL scheme: {url}", details={"url": url})


__all__ = ["FilesystemObjectStore", "object_key", "extension_for", "content_digest", "fetch_bytes"]
