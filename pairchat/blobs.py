from __future__ import annotations

import os
import re
import time
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader

from .config import CloudinaryConfig, Settings
from .errors import BlobDeletionError, ValidationError

LOGGER = logging.getLogger("pairchat.blobs")

PUBLIC_UPLOAD_PREFIX = "/uploads/"

ALLOWED_EXTENSIONS = {
    ".jpeg", ".jpg", ".png", ".gif",
    ".mp4", ".mov", ".avi",
    ".pdf", ".doc", ".docx", ".txt",
    ".mp3", ".wav", ".ogg", ".webm", ".m4a",
}
ALLOWED_DOCUMENT_MIME = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}

_CLOUDINARY_URL_RE = re.compile(r"/(image|video|raw)/upload/(?:v\d+/)?(.+)$")


@dataclass
class StoredBlob:
    filename: str
    original_name: str
    size: int
    path: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "originalName": self.original_name,
            "size": self.size,
            "path": self.path,
        }


def media_kind_from_mime(mime: str) -> str:
    mime = (mime or "").lower().strip()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    if mime in ALLOWED_DOCUMENT_MIME:
        return "document"
    return ""


def cloudinary_resource_type(kind: str) -> str:
    # Cloudinary treats audio as "video" resource in most cases.
    if kind == "image":
        return "image"
    if kind in ("video", "audio"):
        return "video"
    return "raw"


def validate_upload(filename: str, content_type: str, size: int, max_bytes: int) -> str:
    """Check an upload against the allow-list and size limit; returns its media kind."""
    if not filename:
        raise ValidationError("No file uploaded")
    ext = os.path.splitext(filename)[1].lower()
    kind = media_kind_from_mime(content_type)
    if ext not in ALLOWED_EXTENSIONS or not kind:
        raise ValidationError("File type not allowed")
    if size > max_bytes:
        raise ValidationError(f"File too large (max {max_bytes // (1024 * 1024)}MB)")
    return kind


class BlobStore:
    def save(self, data: bytes, original_name: str, content_type: str) -> StoredBlob:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        """Remove a stored blob. Raises BlobDeletionError; a missing blob is not an error."""
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, upload_dir: str):
        self.upload_dir = upload_dir

    def _unique_name(self, original_name: str) -> str:
        ext = os.path.splitext(original_name)[1].lower()
        return f"{int(time.time() * 1000)}-{secrets.randbelow(10 ** 9)}{ext}"

    def resolve(self, path: str) -> Optional[str]:
        """Map a public /uploads/... path to a file inside upload_dir, or None if it points elsewhere."""
        if not path or not path.startswith(PUBLIC_UPLOAD_PREFIX):
            return None
        name = path[len(PUBLIC_UPLOAD_PREFIX):]
        try:
            root = os.path.realpath(self.upload_dir)
            target = os.path.realpath(os.path.join(root, name))
        except ValueError:
            # embedded NUL and similar
            return None
        if os.path.dirname(target) != root:
            return None
        return target

    def save(self, data: bytes, original_name: str, content_type: str) -> StoredBlob:
        os.makedirs(self.upload_dir, exist_ok=True)
        filename = self._unique_name(original_name)
        with open(os.path.join(self.upload_dir, filename), "wb") as fh:
            fh.write(data)
        return StoredBlob(
            filename=filename,
            original_name=original_name,
            size=len(data),
            path=PUBLIC_UPLOAD_PREFIX + filename,
        )

    def delete(self, path: str) -> None:
        target = self.resolve(path)
        if target is None:
            raise BlobDeletionError(f"Refusing to delete blob outside upload dir: {path}")
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as e:
            raise BlobDeletionError(f"Failed to delete file {target}: {e}")


class CloudinaryBlobStore(BlobStore):
    def __init__(self, config: CloudinaryConfig, folder: str = "pairchat/uploads"):
        self.folder = folder
        cloudinary.config(
            cloud_name=config.cloud_name,
            api_key=config.api_key,
            api_secret=config.api_secret,
            secure=True,
        )

    def save(self, data: bytes, original_name: str, content_type: str) -> StoredBlob:
        kind = media_kind_from_mime(content_type)
        res = cloudinary.uploader.upload(
            data,
            folder=self.folder,
            resource_type=cloudinary_resource_type(kind),
            unique_filename=True,
        )
        return StoredBlob(
            filename=res.get("public_id") or "",
            original_name=original_name,
            size=int(res.get("bytes") or len(data)),
            path=res.get("secure_url") or res.get("url") or "",
        )

    @staticmethod
    def parse_url(path: str) -> Optional[tuple]:
        m = _CLOUDINARY_URL_RE.search(urlparse(path or "").path)
        if not m:
            return None
        resource_type, public_id = m.group(1), m.group(2)
        # raw assets keep their extension as part of the public id
        if resource_type != "raw":
            public_id = os.path.splitext(public_id)[0]
        return resource_type, public_id

    def delete(self, path: str) -> None:
        parsed = self.parse_url(path)
        if parsed is None:
            raise BlobDeletionError(f"Not a Cloudinary asset URL: {path}")
        resource_type, public_id = parsed
        try:
            res = cloudinary.uploader.destroy(public_id, resource_type=resource_type, invalidate=True)
        except Exception as e:
            raise BlobDeletionError(f"Cloudinary destroy failed for {public_id}: {e}")
        result = (res or {}).get("result")
        if result not in ("ok", "not found"):
            raise BlobDeletionError(f"Cloudinary destroy returned {result!r} for {public_id}")


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.cloudinary is not None:
        LOGGER.info("Using Cloudinary blob store")
        return CloudinaryBlobStore(settings.cloudinary)
    LOGGER.info("Using local blob store in %s", os.path.abspath(settings.upload_dir))
    return LocalBlobStore(settings.upload_dir)
