from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class UserRole(str, Enum):
    DRIVER = "fahrer"
    ADMIN = "admin"


class PhotoSlot(str, Enum):
    FRONT_LEFT = "vorne_links"
    FRONT_RIGHT = "vorne_rechts"
    REAR_LEFT = "hinten_links"
    REAR_RIGHT = "hinten_rechts"
    OPTIONAL = "optional"

    @property
    def is_required(self) -> bool:
        return self is not PhotoSlot.OPTIONAL

    @property
    def label(self) -> str:
        return PHOTO_SLOT_LABELS[self]


REQUIRED_PHOTO_SLOTS: tuple[PhotoSlot, ...] = (
    PhotoSlot.FRONT_LEFT,
    PhotoSlot.FRONT_RIGHT,
    PhotoSlot.REAR_LEFT,
    PhotoSlot.REAR_RIGHT,
)

PHOTO_SLOT_LABELS: dict[PhotoSlot, str] = {
    PhotoSlot.FRONT_LEFT: "Vorne Links",
    PhotoSlot.FRONT_RIGHT: "Vorne Rechts",
    PhotoSlot.REAR_LEFT: "Hinten Links",
    PhotoSlot.REAR_RIGHT: "Hinten Rechts",
    PhotoSlot.OPTIONAL: "Zusätzlich",
}


@dataclass
class User:
    id: int
    username: str
    first_name: str
    last_name: str
    role: UserRole
    is_active: bool
    password_hash: str
    created_at: datetime

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Vehicle:
    id: int
    license_plate: str
    brand: Optional[str]
    model: Optional[str]
    concession: Optional[str]
    is_active: bool
    created_at: datetime

    @property
    def label(self) -> str:
        if self.brand and self.model:
            return f"{self.license_plate} ({self.brand} {self.model})"
        return self.license_plate


@dataclass
class ReportPhoto:
    id: int
    report_id: int
    photo_url: str
    photo_type: PhotoSlot
    is_required: bool
    created_at: datetime


@dataclass
class VehicleReport:
    id: int
    user_id: int
    vehicle_id: int
    license_plate: str
    mileage: int
    notes: Optional[str]
    report_date: str
    report_time: str
    created_at: datetime
    driver: Optional[User] = None
    photos: List[ReportPhoto] = field(default_factory=list)


@dataclass
class FavoriteVehicle:
    user_id: int
    vehicle_id: int
    created_at: datetime


@dataclass
class SessionToken:
    id: int
    user_id: int
    token: str
    created_at: datetime
    expires_at: datetime
