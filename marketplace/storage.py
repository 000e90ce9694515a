"""
Blob storage boundary.

The core never keeps binaries: an upload goes to a storage backend and only
the returned public URL is stored on the Store or Product row.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import requests

from marketplace.config import Config
from marketplace.errors import MarketplaceError, UpstreamError, ValidationError
from marketplace.observability import increment_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Upload:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        if "." not in self.filename:
            return ""
        return self.filename.rsplit(".", 1)[-1].lower()


@dataclass(frozen=True)
class UploadFailure:
    label: str
    filename: str
    reason: str

    def to_dict(self) -> dict:
        return {"label": self.label, "filename": self.filename, "reason": self.reason}


class BlobStorage:
    """Accepts a payload and a path, returns a publicly resolvable URL."""

    def __init__(self, allowed_extensions: Sequence[str] = Config.UPLOAD_ALLOWED_EXTENSIONS) -> None:
        self.allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)

    def upload(self, bucket: str, path: str, upload: Upload) -> str:
        self._check_extension(upload)
        if not upload.content:
            raise ValidationError(f"File {upload.filename} is empty", field="file")
        return self._put(bucket, path, upload)

    def _check_extension(self, upload: Upload) -> None:
        if upload.extension not in self.allowed_extensions:
            raise ValidationError(
                f"File type .{upload.extension or '?'} is not allowed",
                field="file",
                allowed=list(self.allowed_extensions),
            )

    def _put(self, bucket: str, path: str, upload: Upload) -> str:
        raise NotImplementedError

    def delete(self, bucket: str, path: str) -> None:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    def __init__(
        self,
        root: Path | str = Config.MEDIA_ROOT,
        base_url: str = Config.MEDIA_BASE_URL,
        allowed_extensions: Sequence[str] = Config.UPLOAD_ALLOWED_EXTENSIONS,
    ) -> None:
        super().__init__(allowed_extensions)
        self.root = Path(root)
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"

    def _put(self, bucket: str, path: str, upload: Upload) -> str:
        target = self.root / bucket / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(upload.content)
        except OSError as exc:
            raise UpstreamError(f"Could not store {upload.filename}: {exc}") from exc
        return f"{self.base_url}{bucket}/{path}"

    def delete(self, bucket: str, path: str) -> None:
        try:
            (self.root / bucket / path).unlink(missing_ok=True)
        except OSError as exc:
            raise UpstreamError(f"Could not delete {bucket}/{path}: {exc}") from exc


class HttpBlobStorage(BlobStorage):
    """Object storage reachable over HTTP (Supabase storage style PUT endpoint)."""

    def __init__(
        self,
        base_url: str = Config.BLOB_STORAGE_URL,
        token: str = Config.BLOB_STORAGE_TOKEN,
        timeout: float = Config.BLOB_STORAGE_TIMEOUT,
        allowed_extensions: Sequence[str] = Config.UPLOAD_ALLOWED_EXTENSIONS,
        http: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(allowed_extensions)
        if not base_url:
            raise ValueError("BLOB_STORAGE_URL must be set for the http storage backend")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self, content_type: Optional[str] = None) -> dict:
        headers = {}
        if content_type:
            headers["Content-Type"] = content_type
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _put(self, bucket: str, path: str, upload: Upload) -> str:
        url = f"{self.base_url}/object/{bucket}/{path}"
        headers = self._headers(upload.content_type)
        try:
            response = self.http.put(url, data=upload.content, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamError(f"Upload of {upload.filename} failed: {exc}") from exc
        return f"{self.base_url}/object/public/{bucket}/{path}"

    def delete(self, bucket: str, path: str) -> None:
        url = f"{self.base_url}/object/{bucket}/{path}"
        try:
            response = self.http.delete(url, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamError(f"Delete of {bucket}/{path} failed: {exc}") from exc


def build_blob_storage(config: type[Config] = Config) -> BlobStorage:
    if config.BLOB_STORAGE_BACKEND == "http":
        return HttpBlobStorage(
            base_url=config.BLOB_STORAGE_URL,
            token=config.BLOB_STORAGE_TOKEN,
            timeout=config.BLOB_STORAGE_TIMEOUT,
            allowed_extensions=config.UPLOAD_ALLOWED_EXTENSIONS,
        )
    return LocalBlobStorage(
        root=config.MEDIA_ROOT,
        base_url=config.MEDIA_BASE_URL,
        allowed_extensions=config.UPLOAD_ALLOWED_EXTENSIONS,
    )


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def upload_many(
    storage: BlobStorage,
    bucket: str,
    items: Iterable[Tuple[str, str, Upload]],
) -> Tuple[List[str], List[UploadFailure]]:
    """
    Upload (label, path, upload) triples best-effort.

    A failing item is reported and skipped; the remaining items still upload.
    URLs come back in the order of the successful items.
    """
    urls: List[str] = []
    failures: List[UploadFailure] = []
    for label, path, upload in items:
        try:
            urls.append(storage.upload(bucket, path, upload))
        except MarketplaceError as exc:
            failures.append(UploadFailure(label=label, filename=upload.filename, reason=exc.message))
            increment_counter("uploads_failed_total", labels={"bucket": bucket})
            logger.warning(
                "Upload %s failed",
                upload.filename,
                extra={"bucket": bucket, "blob_path": path, "reason": exc.message},
            )
    return urls, failures


def discard_uploads(storage: BlobStorage, bucket: str, paths: Iterable[str]) -> None:
    """Remove blobs whose row never got written; a blob that cannot be removed is logged as orphaned."""
    for path in paths:
        try:
            storage.delete(bucket, path)
        except MarketplaceError as exc:
            increment_counter("uploads_orphaned_total", labels={"bucket": bucket})
            logger.warning(
                "Could not discard upload %s",
                path,
                extra={"bucket": bucket, "blob_path": path, "reason": exc.message},
            )
        else:
            increment_counter("uploads_discarded_total", labels={"bucket": bucket})
