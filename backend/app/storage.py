"""
Photo stores. A photo row only keeps a URL; the store turns an upload into that
URL and back into bytes.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .logger import get_logger
from .photos import PHOTO_EXTENSIONS, UploadedFile, normalized_content_type

logger = get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
CONTENT_TYPES_BY_SUFFIX = {suffix: content_type for content_type, suffix in PHOTO_EXTENSIONS.items()}


class PhotoStorage(Protocol):
    """Operations the report workflows need from a photo store."""

    def save(self, upload: UploadedFile, *, report_id: int, slot: str) -> str:
        ...

    def load(self, url: str) -> tuple[str, bytes]:
        ...

    def delete(self, url: str) -> None:
        ...


@dataclass
class InlinePhotoStorage:
    """Keeps the image inside the photo row as a ``data:`` URL."""

    def save(self, upload: UploadedFile, *, report_id: int, slot: str) -> str:
        encoded = base64.b64encode(upload.data).decode("ascii")
        return f"data:{normalized_content_type(upload.content_type)};base64,{encoded}"

    def load(self, url: str) -> tuple[str, bytes]:
        if not url.startswith("data:") or ";base64," not in url:
            raise FileNotFoundError(url)
        header, encoded = url[len("data:"):].split(";base64,", 1)
        try:
            data = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise FileNotFoundError(url) from exc
        return header or DEFAULT_CONTENT_TYPE, data

    def delete(self, url: str) -> None:
        return None


@dataclass
class LocalPhotoStorage:
    """Writes images below ``root`` and serves them under ``url_prefix``."""

    root: Path
    url_prefix: str = "/uploads"

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, upload: UploadedFile, *, report_id: int, slot: str) -> str:
        content_type = normalized_content_type(upload.content_type)
        if content_type not in PHOTO_EXTENSIONS:
            raise ValueError(f"Refusing to store {content_type or 'untyped'} upload")
        suffix = PHOTO_EXTENSIONS[content_type]
        filename = f"report-{report_id}-{slot}-{uuid.uuid4().hex}{suffix}"
        (self.root / filename).write_bytes(upload.data)
        return f"{self.url_prefix}/{filename}"

    def path_for(self, url: str) -> Path:
        prefix = self.url_prefix.rstrip("/") + "/"
        if not url.startswith(prefix):
            raise FileNotFoundError(url)
        safe_name = Path(url[len(prefix):]).name
        if not safe_name:
            raise FileNotFoundError(url)
        return self.root / safe_name

    def load(self, url: str) -> tuple[str, bytes]:
        path = self.path_for(url)
        if not path.is_file():
            raise FileNotFoundError(url)
        content_type = CONTENT_TYPES_BY_SUFFIX.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)
        return content_type, path.read_bytes()

    def delete(self, url: str) -> None:
        path = self.path_for(url)
        path.unlink(missing_ok=True)
        logger.debug("Removed stored photo %s", path.name)


def create_storage(kind: str, upload_dir: Path) -> PhotoStorage:
    if kind == "inline":
        return InlinePhotoStorage()
    if kind == "local":
        return LocalPhotoStorage(upload_dir)
    raise ValueError(f"Unknown photo storage '{kind}'")
