"""
Pending photo attachments for a report that is still being filled in.

Every pending photo owns a preview handle. A handle is released exactly once:
when its photo is replaced, removed, or the whole selection is cleared.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Union

from .errors import PhotoRejectedError
from .models import REQUIRED_PHOTO_SLOTS, PhotoSlot

MAX_PHOTO_BYTES = 10 * 1024 * 1024
PROGRESS_STEP = 10
PROGRESS_INTERVAL = timedelta(milliseconds=100)

# Raster formats only; the stored suffix always comes from this table.
PHOTO_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


@dataclass
class UploadedFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def normalized_content_type(content_type: Optional[str]) -> str:
    content_type = (content_type or "").split(";", 1)[0].strip().lower()
    return "image/jpeg" if content_type == "image/jpg" else content_type


def validate_photo(upload: UploadedFile) -> None:
    if normalized_content_type(upload.content_type) not in PHOTO_EXTENSIONS:
        raise PhotoRejectedError("Bitte wählen Sie eine Bilddatei aus.")
    if upload.size > MAX_PHOTO_BYTES:
        raise PhotoRejectedError("Die Datei ist zu groß. Maximale Größe: 10MB")


class PreviewRegistry:
    """In-memory preview images addressed by an unguessable token."""

    url_prefix = "/previews"

    def __init__(self) -> None:
        self._items: dict[str, tuple[str, bytes]] = {}
        self._lock = threading.Lock()

    def register(self, upload: UploadedFile) -> str:
        token = secrets.token_urlsafe(16)
        with self._lock:
            self._items[token] = (normalized_content_type(upload.content_type), upload.data)
        return token

    def get(self, token: str) -> Optional[tuple[str, bytes]]:
        with self._lock:
            return self._items.get(token)

    def revoke(self, token: str) -> None:
        with self._lock:
            if token not in self._items:
                raise LookupError(f"Preview {token} is not registered")
            del self._items[token]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class PreviewHandle:
    registry: PreviewRegistry
    token: str
    released: bool = False

    @property
    def url(self) -> str:
        return f"{self.registry.url_prefix}/{self.token}"

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.registry.revoke(self.token)


@dataclass
class PendingPhoto:
    upload: UploadedFile
    slot: PhotoSlot
    preview: PreviewHandle
    selected_at: datetime

    def progress(self, now: Optional[datetime] = None) -> int:
        """Simulated upload progress in percent; purely cosmetic."""
        elapsed = (now or datetime.now()) - self.selected_at
        steps = int(elapsed / PROGRESS_INTERVAL)
        return max(0, min(100, steps * PROGRESS_STEP))


class PhotoSelection:
    def __init__(
        self,
        registry: Optional[PreviewRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.registry = registry if registry is not None else PreviewRegistry()
        self.clock = clock
        self._photos: List[PendingPhoto] = []

    @property
    def photos(self) -> tuple[PendingPhoto, ...]:
        return tuple(self._photos)

    def select(self, slot: Union[PhotoSlot, str], upload: UploadedFile) -> PendingPhoto:
        """Add a photo. Required slots hold one photo and are replaced; the
        optional slot appends."""
        slot = PhotoSlot(slot)
        validate_photo(upload)
        if slot.is_required:
            for index, existing in enumerate(self._photos):
                if existing.slot is slot:
                    existing.preview.release()
                    replacement = self._pending(slot, upload)
                    self._photos[index] = replacement
                    return replacement
        pending = self._pending(slot, upload)
        self._photos.append(pending)
        return pending

    def remove(self, index: int) -> None:
        if index < 0 or index >= len(self._photos):
            raise IndexError("No photo at that position")
        removed = self._photos.pop(index)
        removed.preview.release()

    def clear(self) -> None:
        photos, self._photos = self._photos, []
        for photo in photos:
            photo.preview.release()

    def photo_for(self, slot: PhotoSlot) -> Optional[PendingPhoto]:
        return next((photo for photo in self._photos if photo.slot is slot), None)

    def index_of(self, photo: PendingPhoto) -> int:
        return self._photos.index(photo)

    @property
    def optional_photos(self) -> List[PendingPhoto]:
        return [photo for photo in self._photos if photo.slot is PhotoSlot.OPTIONAL]

    @property
    def missing_slots(self) -> List[PhotoSlot]:
        return [slot for slot in REQUIRED_PHOTO_SLOTS if self.photo_for(slot) is None]

    @property
    def required_missing(self) -> bool:
        return bool(self.missing_slots)

    def _pending(self, slot: PhotoSlot, upload: UploadedFile) -> PendingPhoto:
        handle = PreviewHandle(self.registry, self.registry.register(upload))
        return PendingPhoto(upload=upload, slot=slot, preview=handle, selected_at=self.clock())

    def __len__(self) -> int:
        return len(self._photos)

    def __iter__(self) -> Iterator[PendingPhoto]:
        return iter(list(self._photos))

    def __enter__(self) -> "PhotoSelection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.clear()
