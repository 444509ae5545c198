from __future__ import annotations

import inspect
import logging
from pathlib import Path

import pytest

from backend.app import CarReportApp
from backend.app.config import Settings
from backend.app.models import User, UserRole, Vehicle
from backend.app.photos import UploadedFile
from backend.app.storage import InlinePhotoStorage, LocalPhotoStorage, create_storage


def test_dataclasses_do_not_use_slots() -> None:
    from backend.app import admin as admin_module
    from backend.app import app as app_module
    from backend.app import auth as auth_module
    from backend.app import filters as filters_module
    from backend.app import models as models_module
    from backend.app import photos as photos_module
    from backend.app import reports as reports_module

    modules = [admin_module, app_module, auth_module, filters_module, models_module, photos_module, reports_module]
    dataclass_params = []
    for module in modules:
        for _, obj in inspect.getmembers(module, inspect.isclass):
            params = getattr(obj, "__dataclass_params__", None)
            if params is not None:
                dataclass_params.append(params)

    assert dataclass_params, "Expected to discover dataclasses in backend modules"
    assert all(
        not getattr(params, "slots", False) for params in dataclass_params
    ), "Dataclasses must not request slots for Python 3.9 compatibility"


def test_seed_defaults_is_idempotent(app: CarReportApp) -> None:
    app.seed_defaults()
    app.seed_defaults()

    users = app.database.list_users()
    assert sorted(user.username for user in users) == ["admin", "fahrer"]
    assert {user.role for user in users} == {UserRole.ADMIN, UserRole.DRIVER}
    assert len(app.database.list_vehicles()) == 4


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CARMELDE_PAGE_SIZE", "5")
    monkeypatch.setenv("CARMELDE_PHOTO_STORAGE", "inline")
    monkeypatch.setenv("CARMELDE_UPLOAD_DIR", str(tmp_path / "env-uploads"))

    settings = Settings()

    assert settings.page_size == 5
    assert settings.photo_storage == "inline"
    assert settings.upload_dir == tmp_path / "env-uploads"
    assert settings.report_window_days == 7
    assert settings.success_message_seconds == 5


def test_create_uses_settings(tmp_path: Path) -> None:
    settings = Settings(
        database_path=tmp_path / "settings.db",
        photo_storage="inline",
        page_size=3,
        history_limit=2,
        session_expiry_minutes=5,
    )
    app = CarReportApp.create(settings=settings)

    assert app.database.path == tmp_path / "settings.db"
    assert isinstance(app.storage, InlinePhotoStorage)
    assert app.reports.page_size == 3
    assert app.reports.history_limit == 2
    assert app.auth.token_expiry_minutes == 5


def test_create_storage(tmp_path: Path) -> None:
    local = create_storage("local", tmp_path / "photos")
    assert isinstance(local, LocalPhotoStorage)
    assert (tmp_path / "photos").is_dir()
    assert isinstance(create_storage("inline", tmp_path), InlinePhotoStorage)
    with pytest.raises(ValueError):
        create_storage("s3", tmp_path)


def test_local_storage_rejects_paths_outside_root(tmp_path: Path, png) -> None:
    storage = LocalPhotoStorage(tmp_path / "photos")
    url = storage.save(png("front.png"), report_id=1, slot="vorne_links")
    assert url.startswith("/uploads/report-1-vorne_links-")
    assert storage.load(url) == ("image/png", png().data)

    with pytest.raises(FileNotFoundError):
        storage.load("/uploads/../../etc/passwd")
    with pytest.raises(FileNotFoundError):
        storage.load("/elsewhere/file.png")

    storage.delete(url)
    storage.delete(url)
    with pytest.raises(FileNotFoundError):
        storage.load(url)


def test_favorites_are_listed_first(seeded_app: CarReportApp, driver: User) -> None:
    vehicles = seeded_app.list_vehicles_for_driver(driver)
    assert [vehicle.license_plate for vehicle in vehicles] == ["B-MW 1234", "B-VW 5678", "HH-MB 9876", "M-AU 4321"]

    munich = next(vehicle for vehicle in vehicles if vehicle.license_plate == "M-AU 4321")
    assert seeded_app.toggle_favorite(driver=driver, vehicle_id=munich.id) is True
    reordered = seeded_app.list_vehicles_for_driver(driver)
    assert reordered[0].id == munich.id

    assert seeded_app.toggle_favorite(driver=driver, vehicle_id=munich.id) is False
    assert seeded_app.list_favorite_vehicle_ids(driver) == set()
    with pytest.raises(LookupError):
        seeded_app.toggle_favorite(driver=driver, vehicle_id=9999)


def test_inactive_vehicles_are_hidden_from_drivers(
    seeded_app: CarReportApp,
    driver: User,
    vehicle: Vehicle,
) -> None:
    seeded_app.database.set_vehicle_active(vehicle.id, False)
    plates = [item.license_plate for item in seeded_app.list_vehicles_for_driver(driver)]
    assert vehicle.license_plate not in plates
    assert vehicle.license_plate in [item.license_plate for item in seeded_app.list_all_vehicles()]


def test_list_drivers_excludes_admins(seeded_app: CarReportApp) -> None:
    assert [user.username for user in seeded_app.list_drivers()] == ["fahrer"]


def test_foreign_keys_are_enforced(seeded_app: CarReportApp, driver: User) -> None:
    import sqlite3

    with pytest.raises(sqlite3.IntegrityError):
        seeded_app.database.add_report(
            user_id=driver.id,
            vehicle_id=9999,
            license_plate="X",
            mileage=1,
            notes=None,
            report_date="2024-01-01",
            report_time="08:00",
        )


def test_modules_log_through_named_loggers(caplog: pytest.LogCaptureFixture, seeded_app: CarReportApp) -> None:
    with caplog.at_level(logging.INFO, logger="backend.app.auth"):
        seeded_app.auth.sign_in("fahrer", "fahrer")
    assert any(record.name == "backend.app.auth" and "signed in" in record.message for record in caplog.records)


def test_local_storage_names_files_by_content_type(tmp_path: Path, png) -> None:
    storage = LocalPhotoStorage(tmp_path / "photos")
    disguised = UploadedFile(filename="evil.html", content_type="image/png", data=png().data)

    url = storage.save(disguised, report_id=2, slot="vorne_links")

    assert url.endswith(".png")
    assert [path.suffix for path in (tmp_path / "photos").iterdir()] == [".png"]
    assert storage.load(url)[0] == "image/png"

    with pytest.raises(ValueError):
        storage.save(
            UploadedFile(filename="page.html", content_type="text/html", data=b"<p>"),
            report_id=2,
            slot="vorne_links",
        )
