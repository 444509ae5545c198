from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .admin import UserAdminService, VehicleAdminService
from .auth import AuthService, hash_password
from .config import Settings, get_settings
from .database import Database
from .logger import configure_logging, get_logger
from .models import User, UserRole, Vehicle
from .photos import PhotoSelection, PreviewRegistry
from .reports import ReportService, ReportSubmission
from .storage import PhotoStorage, create_storage

logger = get_logger(__name__)


@dataclass
class CarReportApp:
    database: Database
    auth: AuthService
    reports: ReportService
    users: UserAdminService
    vehicles: VehicleAdminService
    storage: PhotoStorage
    previews: PreviewRegistry
    settings: Settings

    @classmethod
    def create(
        cls,
        database_path: Optional[Path] = None,
        *,
        storage: Optional[PhotoStorage] = None,
        settings: Optional[Settings] = None,
    ) -> "CarReportApp":
        settings = settings or get_settings()
        database = Database(Path(database_path or settings.database_path))
        database.initialize()
        storage = storage or create_storage(settings.photo_storage, settings.upload_dir)
        auth = AuthService(database, token_expiry_minutes=settings.session_expiry_minutes)
        reports = ReportService(
            database,
            storage,
            page_size=settings.page_size,
            history_limit=settings.history_limit,
            report_window_days=settings.report_window_days,
        )
        return cls(
            database=database,
            auth=auth,
            reports=reports,
            users=UserAdminService(database),
            vehicles=VehicleAdminService(database),
            storage=storage,
            previews=PreviewRegistry(),
            settings=settings,
        )

    def seed_defaults(self) -> None:
        user_definitions = [
            ("admin", "Anna", "Admin", UserRole.ADMIN, "admin"),
            ("fahrer", "Max", "Mustermann", UserRole.DRIVER, "fahrer"),
        ]
        for username, first_name, last_name, role, password in user_definitions:
            if not self.database.get_user_by_username(username):
                self.database.add_user(
                    username=username,
                    first_name=first_name,
                    last_name=last_name,
                    role=role,
                    password_hash=hash_password(password),
                )
        vehicle_definitions = [
            ("B-MW 1234", "BMW", "320d", "Berlin"),
            ("B-VW 5678", "VW", "Passat", "Berlin"),
            ("M-AU 4321", "Audi", "A4", "München"),
            ("HH-MB 9876", "Mercedes", "E-Klasse", "Hamburg"),
        ]
        for plate, brand, model, concession in vehicle_definitions:
            if not self.database.get_vehicle_by_plate(plate):
                self.database.add_vehicle(license_plate=plate, brand=brand, model=model, concession=concession)
        logger.info("Default users and vehicles are in place")

    # Driver operations
    def new_submission(self, driver: User) -> ReportSubmission:
        return ReportSubmission(
            service=self.reports,
            driver=driver,
            photos=PhotoSelection(registry=self.previews),
            confirmation_seconds=self.settings.success_message_seconds,
        )

    def list_vehicles_for_driver(self, driver: User) -> List[Vehicle]:
        """Active vehicles, favorites first, each group ordered by plate."""
        favorites = self.database.list_favorite_vehicle_ids(driver.id)
        vehicles = self.database.list_vehicles(active_only=True)
        return sorted(vehicles, key=lambda vehicle: (vehicle.id not in favorites, vehicle.license_plate))

    def list_favorite_vehicle_ids(self, driver: User) -> set[int]:
        return self.database.list_favorite_vehicle_ids(driver.id)

    def toggle_favorite(self, *, driver: User, vehicle_id: int) -> bool:
        """Flip the favorite mark and return whether the vehicle is now a favorite."""
        if not self.database.get_vehicle(vehicle_id):
            raise LookupError("Fahrzeug nicht gefunden")
        if vehicle_id in self.database.list_favorite_vehicle_ids(driver.id):
            self.database.remove_favorite(driver.id, vehicle_id)
            return False
        self.database.add_favorite(driver.id, vehicle_id)
        return True

    def list_drivers(self) -> List[User]:
        return [user for user in self.database.list_users() if user.role == UserRole.DRIVER]

    def list_all_vehicles(self) -> List[Vehicle]:
        return self.database.list_vehicles()


if __name__ == "__main__":  # pragma: no cover - manual interaction helper
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_dir)
    app = CarReportApp.create(settings=settings)
    app.seed_defaults()
    print("Car Melde App ready.")
    print("Default admin login: admin / admin")
    print("Default driver login: fahrer / fahrer")
    print("Use this module within Python to interact with services programmatically.")
