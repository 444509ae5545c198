from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from backend.app import CarReportApp
from backend.app.errors import PhotoSubmissionError, ValidationError
from backend.app.models import REQUIRED_PHOTO_SLOTS, PhotoSlot, User, Vehicle
from backend.app.photos import PhotoSelection, UploadedFile
from backend.app.reports import (
    INVALID_MILEAGE,
    MISSING_PHOTOS,
    MISSING_VEHICLE,
    SubmissionState,
    parse_mileage,
    validate_submission,
)
from backend.app.storage import LocalPhotoStorage


class FailingStorage(LocalPhotoStorage):
    """Local storage that breaks on the n-th save."""

    def __init__(self, root: Path, fail_on: int) -> None:
        super().__init__(root)
        self.fail_on = fail_on
        self.saves = 0

    def save(self, upload: UploadedFile, *, report_id: int, slot: str) -> str:
        self.saves += 1
        if self.saves == self.fail_on:
            raise OSError("disk full")
        return super().save(upload, report_id=report_id, slot=slot)


def _count(app: CarReportApp, table: str) -> int:
    with app.database.session() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("45000", 45000),
        ("0", 0),
        (" 42 ", 42),
        (12, 12),
        ("-1", None),
        ("4.5", None),
        ("abc", None),
        ("", None),
        (None, None),
        ("١٢", None),
        (-3, None),
        (True, None),
        ("9999999", 9_999_999),
        ("0000045000", 45000),
        ("10000000", None),
        ("9" * 25, None),
        (10**8, None),
    ],
)
def test_parse_mileage(raw, expected) -> None:
    assert parse_mileage(raw) == expected


def test_validation_reports_first_failing_rule(make_selection: Callable[..., PhotoSelection]) -> None:
    empty = make_selection(slots=())
    complete = make_selection()

    assert validate_submission(None, "abc", empty) == MISSING_VEHICLE
    assert validate_submission(1, "abc", empty) == INVALID_MILEAGE
    assert validate_submission(1, "-5", complete) == INVALID_MILEAGE
    assert validate_submission(1, "100", empty) == MISSING_PHOTOS
    assert validate_submission(1, "100", complete) is None


def test_optional_photos_do_not_replace_required_ones(make_selection: Callable[..., PhotoSelection]) -> None:
    selection = make_selection(slots=REQUIRED_PHOTO_SLOTS[:3], optional=5)
    assert validate_submission(1, "100", selection) == MISSING_PHOTOS


def test_submit_report_creates_report_and_photos(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
    fixed_clock: datetime,
    settings,
) -> None:
    report = seeded_app.reports.submit_report(
        driver=driver,
        vehicle_id=vehicle.id,
        mileage="45000",
        notes="",
        photos=make_selection(),
    )

    assert report.report_date == "2024-01-05"
    assert report.report_time == "14:37"
    assert report.license_plate == "B-MW 1234"
    assert report.mileage == 45000
    assert report.notes is None
    assert len(report.photos) == 4
    assert all(photo.is_required for photo in report.photos)

    stored = seeded_app.database.get_report(report.id)
    assert stored is not None
    assert stored.driver is not None and stored.driver.id == driver.id
    assert {photo.photo_type for photo in stored.photos} == set(REQUIRED_PHOTO_SLOTS)
    assert all(photo.photo_url.startswith("/uploads/") for photo in stored.photos)
    assert len(list(settings.upload_dir.iterdir())) == 4


def test_submit_report_keeps_optional_photos_and_notes(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
) -> None:
    report = seeded_app.reports.submit_report(
        driver=driver,
        vehicle_id=vehicle.id,
        mileage=120,
        notes="  Kratzer hinten links  ",
        photos=make_selection(optional=2),
    )
    assert report.notes == "Kratzer hinten links"
    optional = [photo for photo in report.photos if photo.photo_type is PhotoSlot.OPTIONAL]
    assert len(optional) == 2
    assert not any(photo.is_required for photo in optional)


def test_submit_rejects_incomplete_photos_before_writing(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
) -> None:
    with pytest.raises(ValidationError, match="Pflichtfotos"):
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id,
            mileage="100",
            notes=None,
            photos=make_selection(slots=REQUIRED_PHOTO_SLOTS[:2], optional=4),
        )
    assert _count(seeded_app, "vehicle_reports") == 0


def test_submit_rejects_inactive_vehicle(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
) -> None:
    seeded_app.database.set_vehicle_active(vehicle.id, False)
    with pytest.raises(LookupError, match="Fahrzeug nicht gefunden"):
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id,
            mileage="100",
            notes=None,
            photos=make_selection(),
        )


def test_admin_cannot_submit_reports(
    seeded_app: CarReportApp,
    admin: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
) -> None:
    with pytest.raises(PermissionError):
        seeded_app.reports.submit_report(
            driver=admin,
            vehicle_id=vehicle.id,
            mileage="100",
            notes=None,
            photos=make_selection(),
        )


def test_failing_photo_storage_rolls_back_everything(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
    tmp_path: Path,
) -> None:
    storage = FailingStorage(tmp_path / "failing", fail_on=3)
    seeded_app.reports.storage = storage

    with pytest.raises(PhotoSubmissionError) as excinfo:
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id,
            mileage="100",
            notes=None,
            photos=make_selection(),
        )

    assert excinfo.value.slot == PhotoSlot.REAR_LEFT.value
    assert "Hinten Links" in str(excinfo.value)
    assert _count(seeded_app, "vehicle_reports") == 0
    assert _count(seeded_app, "report_photos") == 0
    assert list((tmp_path / "failing").iterdir()) == []


def test_failing_photo_insert_rolls_back_everything(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
    settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original = seeded_app.database.add_report_photo
    calls = {"count": 0}

    def flaky_add_report_photo(**kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise sqlite3.OperationalError("database is locked")
        return original(**kwargs)

    monkeypatch.setattr(seeded_app.database, "add_report_photo", flaky_add_report_photo)

    with pytest.raises(PhotoSubmissionError) as excinfo:
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id,
            mileage="100",
            notes=None,
            photos=make_selection(),
        )

    assert excinfo.value.slot == PhotoSlot.FRONT_RIGHT.value
    assert _count(seeded_app, "vehicle_reports") == 0
    assert _count(seeded_app, "report_photos") == 0
    assert list(settings.upload_dir.iterdir()) == []


def test_failing_report_insert_writes_no_photo(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    storage = FailingStorage(tmp_path / "never", fail_on=0)
    seeded_app.reports.storage = storage

    def broken_add_report(**kwargs):
        raise sqlite3.OperationalError("no such table")

    monkeypatch.setattr(seeded_app.database, "add_report", broken_add_report)

    with pytest.raises(sqlite3.OperationalError):
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id,
            mileage="100",
            notes=None,
            photos=make_selection(),
        )
    assert storage.saves == 0


def test_submission_state_machine_invalid_keeps_input(seeded_app: CarReportApp, driver: User, png) -> None:
    submission = seeded_app.new_submission(driver)
    submission.mileage = "100"
    submission.photos.select(PhotoSlot.FRONT_LEFT, png())

    assert submission.submit() is None
    assert submission.state is SubmissionState.INVALID
    assert submission.error == MISSING_VEHICLE
    assert submission.mileage == "100"
    assert len(submission.photos) == 1


def test_submission_success_resets_form_and_times_confirmation(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    fixed_clock: datetime,
    png,
) -> None:
    submission = seeded_app.new_submission(driver)
    submission.vehicle_id = vehicle.id
    submission.mileage = "45000"
    submission.notes = "Alles gut"
    for slot in REQUIRED_PHOTO_SLOTS:
        submission.photos.select(slot, png(f"{slot.value}.png"))
    assert len(seeded_app.previews) == 4

    report = submission.submit()

    assert report is not None
    assert submission.state is SubmissionState.SUCCESS
    assert submission.last_report is report
    assert submission.vehicle_id is None
    assert submission.mileage == ""
    assert submission.notes == ""
    assert len(submission.photos) == 0
    assert len(seeded_app.previews) == 0

    assert submission.confirmation_visible(fixed_clock + timedelta(seconds=4))
    assert not submission.confirmation_visible(fixed_clock + timedelta(seconds=5))
    submission.dismiss_confirmation()
    assert not submission.confirmation_visible(fixed_clock)


def test_submission_failure_keeps_photos_for_retry(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    png,
) -> None:
    submission = seeded_app.new_submission(driver)
    submission.vehicle_id = vehicle.id
    submission.mileage = "10"
    for slot in REQUIRED_PHOTO_SLOTS:
        submission.photos.select(slot, png())
    seeded_app.database.set_vehicle_active(vehicle.id, False)

    assert submission.submit() is None
    assert submission.state is SubmissionState.FAILED
    assert submission.error == "Fahrzeug nicht gefunden"
    assert len(submission.photos) == 4

    submission.close()
    assert len(seeded_app.previews) == 0


def test_oversized_mileage_is_rejected_before_writing(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
    settings,
) -> None:
    with pytest.raises(ValidationError, match="Kilometerstand"):
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id,
            mileage="9" * 25,
            notes=None,
            photos=make_selection(),
        )
    assert _count(seeded_app, "vehicle_reports") == 0
    assert list(settings.upload_dir.iterdir()) == []


@pytest.mark.parametrize(
    "vehicle_id, mileage, message",
    [
        (None, "100", MISSING_VEHICLE),
        ("vehicle", "abc", INVALID_MILEAGE),
    ],
)
def test_submit_report_guards_do_not_depend_on_prevalidation(
    monkeypatch: pytest.MonkeyPatch,
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
    make_selection: Callable[..., PhotoSelection],
    vehicle_id,
    mileage: str,
    message: str,
) -> None:
    monkeypatch.setattr("backend.app.reports.validate_submission", lambda *args: None)
    with pytest.raises(ValidationError) as excinfo:
        seeded_app.reports.submit_report(
            driver=driver,
            vehicle_id=vehicle.id if vehicle_id == "vehicle" else vehicle_id,
            mileage=mileage,
            notes=None,
            photos=make_selection(),
        )
    assert str(excinfo.value) == message
    assert _count(seeded_app, "vehicle_reports") == 0
