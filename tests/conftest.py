from __future__ import annotations

import base64
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app import CarReportApp
from backend.app.config import Settings
from backend.app.models import REQUIRED_PHOTO_SLOTS, PhotoSlot, User, Vehicle, VehicleReport
from backend.app.photos import PhotoSelection, UploadedFile

SAMPLE_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mP8/x8AAvoB9pWcVYoAAAAASUVORK5CYII="
)


def png_upload(name: str = "photo.png", data: bytes = SAMPLE_PNG) -> UploadedFile:
    return UploadedFile(filename=name, content_type="image/png", data=data)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "car_reports.db",
        upload_dir=tmp_path / "uploads",
        photo_storage="local",
        seed_defaults=False,
    )


@pytest.fixture()
def app(settings: Settings) -> CarReportApp:
    return CarReportApp.create(settings.database_path, settings=settings)


@pytest.fixture()
def seeded_app(app: CarReportApp) -> CarReportApp:
    app.seed_defaults()
    return app


@pytest.fixture()
def admin(seeded_app: CarReportApp) -> User:
    user = seeded_app.database.get_user_by_username("admin")
    assert user is not None
    return user


@pytest.fixture()
def driver(seeded_app: CarReportApp) -> User:
    user = seeded_app.database.get_user_by_username("fahrer")
    assert user is not None
    return user


@pytest.fixture()
def vehicle(seeded_app: CarReportApp) -> Vehicle:
    found = seeded_app.database.get_vehicle_by_plate("B-MW 1234")
    assert found is not None
    return found


@pytest.fixture()
def make_selection(seeded_app: CarReportApp) -> Callable[..., PhotoSelection]:
    def factory(
        slots: Iterable[PhotoSlot] = REQUIRED_PHOTO_SLOTS,
        *,
        optional: int = 0,
    ) -> PhotoSelection:
        selection = PhotoSelection(registry=seeded_app.previews)
        for slot in slots:
            selection.select(slot, png_upload(f"{slot.value}.png"))
        for index in range(optional):
            selection.select(PhotoSlot.OPTIONAL, png_upload(f"extra-{index}.png"))
        return selection

    return factory


@pytest.fixture()
def add_report(seeded_app: CarReportApp) -> Callable[..., VehicleReport]:
    """Insert a bare report row with a chosen date, bypassing the submission workflow."""

    def factory(
        driver: User,
        vehicle: Vehicle,
        report_date: str,
        *,
        report_time: str = "08:00",
        notes: Optional[str] = None,
        mileage: int = 1000,
    ) -> VehicleReport:
        return seeded_app.database.add_report(
            user_id=driver.id,
            vehicle_id=vehicle.id,
            license_plate=vehicle.license_plate,
            mileage=mileage,
            notes=notes,
            report_date=report_date,
            report_time=report_time,
        )

    return factory


@pytest.fixture()
def fixed_clock(seeded_app: CarReportApp) -> datetime:
    now = datetime(2024, 1, 5, 14, 37, 52)
    seeded_app.reports.clock = lambda: now
    return now


@pytest.fixture()
def png() -> Callable[..., UploadedFile]:
    return png_upload
