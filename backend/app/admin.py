from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, List, Mapping

from .auth import hash_password
from .database import Database
from .errors import DuplicateEntryError, ValidationError
from .forms import USER_FORM, VEHICLE_FORM, clean_form
from .logger import get_logger
from .models import User, UserRole, Vehicle

MIN_PASSWORD_LENGTH = 3

logger = get_logger(__name__)


def _require_admin(user: User) -> None:
    if user.role != UserRole.ADMIN:
        raise PermissionError("Nur Administratoren können Stammdaten verwalten")


def _is_unique_violation(exc: sqlite3.IntegrityError, column: str) -> bool:
    return f"UNIQUE constraint failed: {column}" in str(exc)


def _is_reference_violation(exc: sqlite3.IntegrityError) -> bool:
    return "FOREIGN KEY constraint failed" in str(exc)


@dataclass
class UserAdminService:
    database: Database

    def list_users(self, *, requester: User) -> List[User]:
        _require_admin(requester)
        return self.database.list_users()

    def get_user(self, user_id: int) -> User:
        user = self.database.get_user(user_id)
        if not user:
            raise LookupError("Benutzer nicht gefunden")
        return user

    def create_user(self, *, requester: User, values: Mapping[str, Any]) -> User:
        _require_admin(requester)
        cleaned = clean_form(USER_FORM, values)
        password = cleaned["password"] or ""
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Passwort muss mindestens {MIN_PASSWORD_LENGTH} Zeichen lang sein")
        try:
            user = self.database.add_user(
                username=cleaned["username"],
                first_name=cleaned["first_name"],
                last_name=cleaned["last_name"],
                role=UserRole(cleaned["role"]),
                password_hash=hash_password(password),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc, "users.username"):
                raise DuplicateEntryError("Benutzername bereits vergeben") from exc
            raise
        logger.info("User %s created by %s", user.username, requester.username)
        return user

    def update_user(self, *, requester: User, user_id: int, values: Mapping[str, Any]) -> User:
        _require_admin(requester)
        self.get_user(user_id)
        cleaned = clean_form(USER_FORM, values)
        password = cleaned["password"] or ""
        if password and len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Passwort muss mindestens {MIN_PASSWORD_LENGTH} Zeichen lang sein")
        try:
            self.database.update_user(
                user_id,
                username=cleaned["username"],
                first_name=cleaned["first_name"],
                last_name=cleaned["last_name"],
                role=UserRole(cleaned["role"]),
                password_hash=hash_password(password) if password else None,
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc, "users.username"):
                raise DuplicateEntryError("Benutzername bereits vergeben") from exc
            raise
        logger.info("User %s updated by %s", user_id, requester.username)
        return self.get_user(user_id)

    def toggle_user_active(self, *, requester: User, user_id: int) -> User:
        _require_admin(requester)
        user = self.get_user(user_id)
        self.database.set_user_active(user_id, not user.is_active)
        logger.info("User %s set active=%s by %s", user.username, not user.is_active, requester.username)
        return self.get_user(user_id)

    def delete_user(self, *, requester: User, user_id: int) -> None:
        _require_admin(requester)
        user = self.get_user(user_id)
        if user.role == UserRole.ADMIN:
            raise PermissionError("Administratoren können nicht gelöscht werden")
        try:
            self.database.delete_user(user_id)
        except sqlite3.IntegrityError as exc:
            if _is_reference_violation(exc):
                raise ValidationError(
                    "Benutzer hat bereits Meldungen und kann nur deaktiviert werden"
                ) from exc
            raise
        logger.info("User %s deleted by %s", user.username, requester.username)


@dataclass
class VehicleAdminService:
    database: Database

    def list_vehicles(self, *, requester: User) -> List[Vehicle]:
        _require_admin(requester)
        return self.database.list_vehicles()

    def get_vehicle(self, vehicle_id: int) -> Vehicle:
        vehicle = self.database.get_vehicle(vehicle_id)
        if not vehicle:
            raise LookupError("Fahrzeug nicht gefunden")
        return vehicle

    def create_vehicle(self, *, requester: User, values: Mapping[str, Any]) -> Vehicle:
        _require_admin(requester)
        cleaned = clean_form(VEHICLE_FORM, values)
        try:
            vehicle = self.database.add_vehicle(
                license_plate=cleaned["license_plate"],
                brand=cleaned["brand"],
                model=cleaned["model"],
                concession=cleaned["concession"],
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc, "vehicles.license_plate"):
                raise DuplicateEntryError("Kennzeichen bereits vorhanden") from exc
            raise
        logger.info("Vehicle %s created by %s", vehicle.license_plate, requester.username)
        return vehicle

    def update_vehicle(self, *, requester: User, vehicle_id: int, values: Mapping[str, Any]) -> Vehicle:
        _require_admin(requester)
        self.get_vehicle(vehicle_id)
        cleaned = clean_form(VEHICLE_FORM, values)
        try:
            self.database.update_vehicle(
                vehicle_id,
                license_plate=cleaned["license_plate"],
                brand=cleaned["brand"],
                model=cleaned["model"],
                concession=cleaned["concession"],
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc, "vehicles.license_plate"):
                raise DuplicateEntryError("Kennzeichen bereits vorhanden") from exc
            raise
        logger.info("Vehicle %s updated by %s", vehicle_id, requester.username)
        return self.get_vehicle(vehicle_id)

    def toggle_vehicle_active(self, *, requester: User, vehicle_id: int) -> Vehicle:
        _require_admin(requester)
        vehicle = self.get_vehicle(vehicle_id)
        self.database.set_vehicle_active(vehicle_id, not vehicle.is_active)
        logger.info("Vehicle %s set active=%s by %s", vehicle.license_plate, not vehicle.is_active, requester.username)
        return self.get_vehicle(vehicle_id)

    def delete_vehicle(self, *, requester: User, vehicle_id: int) -> None:
        _require_admin(requester)
        vehicle = self.get_vehicle(vehicle_id)
        try:
            self.database.delete_vehicle(vehicle_id)
        except sqlite3.IntegrityError as exc:
            if _is_reference_violation(exc):
                raise ValidationError(
                    "Fahrzeug hat bereits Meldungen und kann nur deaktiviert werden"
                ) from exc
            raise
        logger.info("Vehicle %s deleted by %s", vehicle.license_plate, requester.username)
