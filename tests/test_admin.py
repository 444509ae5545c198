from __future__ import annotations

from typing import Callable

import pytest

from backend.app import CarReportApp
from backend.app.auth import verify_password
from backend.app.errors import DuplicateEntryError, ValidationError
from backend.app.models import User, UserRole, Vehicle, VehicleReport


def _user_values(**overrides: str) -> dict[str, str]:
    values = {
        "first_name": "Erika",
        "last_name": "Musterfrau",
        "username": "erika",
        "password": "geheim",
        "role": "fahrer",
    }
    values.update(overrides)
    return values


def test_create_user(seeded_app: CarReportApp, admin: User) -> None:
    user = seeded_app.users.create_user(requester=admin, values=_user_values(first_name="  Erika "))
    assert user.first_name == "Erika"
    assert user.role is UserRole.DRIVER
    assert user.is_active
    assert verify_password("geheim", user.password_hash)
    assert seeded_app.auth.sign_in("erika", "geheim").user_id == user.id


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"first_name": ""}, "Vorname ist erforderlich"),
        ({"first_name": "", "last_name": ""}, "Vorname ist erforderlich"),
        ({"last_name": "   "}, "Nachname ist erforderlich"),
        ({"username": ""}, "Benutzername ist erforderlich"),
        ({"password": "ab"}, "Passwort muss mindestens 3 Zeichen lang sein"),
        ({"password": ""}, "Passwort muss mindestens 3 Zeichen lang sein"),
        ({"role": "chef"}, "Ungültige Auswahl für Rolle"),
    ],
)
def test_create_user_validation(seeded_app: CarReportApp, admin: User, overrides: dict, message: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        seeded_app.users.create_user(requester=admin, values=_user_values(**overrides))
    assert str(excinfo.value) == message
    assert seeded_app.database.get_user_by_username("erika") is None


def test_duplicate_username_is_reported(seeded_app: CarReportApp, admin: User) -> None:
    with pytest.raises(DuplicateEntryError, match="Benutzername bereits vergeben"):
        seeded_app.users.create_user(requester=admin, values=_user_values(username="fahrer"))


def test_update_user_keeps_password_when_blank(seeded_app: CarReportApp, admin: User, driver: User) -> None:
    updated = seeded_app.users.update_user(
        requester=admin,
        user_id=driver.id,
        values=_user_values(username="fahrer", first_name="Moritz", password=""),
    )
    assert updated.first_name == "Moritz"
    assert updated.password_hash == driver.password_hash

    changed = seeded_app.users.update_user(
        requester=admin,
        user_id=driver.id,
        values=_user_values(username="fahrer", password="neu123"),
    )
    assert verify_password("neu123", changed.password_hash)


def test_update_user_to_taken_username(seeded_app: CarReportApp, admin: User, driver: User) -> None:
    with pytest.raises(DuplicateEntryError):
        seeded_app.users.update_user(
            requester=admin,
            user_id=driver.id,
            values=_user_values(username="admin"),
        )


def test_toggle_user_active(seeded_app: CarReportApp, admin: User, driver: User) -> None:
    assert not seeded_app.users.toggle_user_active(requester=admin, user_id=driver.id).is_active
    assert seeded_app.users.toggle_user_active(requester=admin, user_id=driver.id).is_active


def test_admins_cannot_be_deleted(seeded_app: CarReportApp, admin: User) -> None:
    with pytest.raises(PermissionError):
        seeded_app.users.delete_user(requester=admin, user_id=admin.id)
    assert seeded_app.database.get_user(admin.id) is not None


def test_delete_user_removes_sessions_and_favorites(
    seeded_app: CarReportApp,
    admin: User,
    vehicle: Vehicle,
) -> None:
    user = seeded_app.users.create_user(requester=admin, values=_user_values())
    session = seeded_app.auth.sign_in("erika", "geheim")
    seeded_app.toggle_favorite(driver=user, vehicle_id=vehicle.id)

    seeded_app.users.delete_user(requester=admin, user_id=user.id)

    assert seeded_app.database.get_user(user.id) is None
    assert seeded_app.database.get_session_token(session.token) is None
    assert seeded_app.database.list_favorite_vehicle_ids(user.id) == set()


def test_user_with_reports_can_only_be_deactivated(
    seeded_app: CarReportApp,
    admin: User,
    driver: User,
    vehicle: Vehicle,
    add_report: Callable[..., VehicleReport],
) -> None:
    add_report(driver, vehicle, "2024-01-02")
    with pytest.raises(ValidationError, match="deaktiviert"):
        seeded_app.users.delete_user(requester=admin, user_id=driver.id)
    assert seeded_app.database.get_user(driver.id) is not None


def test_drivers_cannot_manage_entities(seeded_app: CarReportApp, driver: User, vehicle: Vehicle) -> None:
    with pytest.raises(PermissionError):
        seeded_app.users.list_users(requester=driver)
    with pytest.raises(PermissionError):
        seeded_app.vehicles.delete_vehicle(requester=driver, vehicle_id=vehicle.id)


def test_create_vehicle_normalizes_optional_fields(seeded_app: CarReportApp, admin: User) -> None:
    created = seeded_app.vehicles.create_vehicle(
        requester=admin,
        values={"license_plate": " K-LN 1 ", "brand": "  ", "model": "Golf", "concession": ""},
    )
    assert created.license_plate == "K-LN 1"
    assert created.brand is None
    assert created.model == "Golf"
    assert created.concession is None


def test_vehicle_validation_and_duplicates(seeded_app: CarReportApp, admin: User, vehicle: Vehicle) -> None:
    with pytest.raises(ValidationError, match="Kennzeichen ist erforderlich"):
        seeded_app.vehicles.create_vehicle(requester=admin, values={"license_plate": ""})
    with pytest.raises(DuplicateEntryError, match="Kennzeichen bereits vorhanden"):
        seeded_app.vehicles.create_vehicle(requester=admin, values={"license_plate": "B-MW 1234"})

    other = seeded_app.vehicles.create_vehicle(requester=admin, values={"license_plate": "K-LN 2"})
    with pytest.raises(DuplicateEntryError, match="Kennzeichen bereits vorhanden"):
        seeded_app.vehicles.update_vehicle(
            requester=admin,
            vehicle_id=other.id,
            values={"license_plate": vehicle.license_plate},
        )


def test_update_vehicle(seeded_app: CarReportApp, admin: User, vehicle: Vehicle) -> None:
    updated = seeded_app.vehicles.update_vehicle(
        requester=admin,
        vehicle_id=vehicle.id,
        values={"license_plate": vehicle.license_plate, "brand": "BMW", "model": "330e", "concession": "Potsdam"},
    )
    assert updated.model == "330e"
    assert updated.concession == "Potsdam"


def test_toggling_vehicle_keeps_report_links(
    seeded_app: CarReportApp,
    admin: User,
    driver: User,
    vehicle: Vehicle,
    add_report: Callable[..., VehicleReport],
) -> None:
    report = add_report(driver, vehicle, "2024-01-02")
    toggled = seeded_app.vehicles.toggle_vehicle_active(requester=admin, vehicle_id=vehicle.id)
    assert not toggled.is_active

    stored = seeded_app.database.get_report(report.id)
    assert stored is not None
    assert stored.vehicle_id == vehicle.id
    assert vehicle.id not in {item.id for item in seeded_app.list_vehicles_for_driver(driver)}


def test_delete_vehicle(
    seeded_app: CarReportApp,
    admin: User,
    driver: User,
    vehicle: Vehicle,
    add_report: Callable[..., VehicleReport],
) -> None:
    add_report(driver, vehicle, "2024-01-02")
    with pytest.raises(ValidationError, match="deaktiviert"):
        seeded_app.vehicles.delete_vehicle(requester=admin, vehicle_id=vehicle.id)

    spare = seeded_app.vehicles.create_vehicle(requester=admin, values={"license_plate": "K-LN 3"})
    seeded_app.vehicles.delete_vehicle(requester=admin, vehicle_id=spare.id)
    assert seeded_app.database.get_vehicle(spare.id) is None
    with pytest.raises(LookupError):
        seeded_app.vehicles.delete_vehicle(requester=admin, vehicle_id=spare.id)
