from __future__ import annotations

import io
import mimetypes
import re
import sqlite3
import zipfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .database import Database
from .errors import PhotoSubmissionError, ValidationError
from .filters import Equals, Page, ReportFilter
from .logger import get_logger
from .models import REQUIRED_PHOTO_SLOTS, PhotoSlot, ReportPhoto, User, UserRole, Vehicle, VehicleReport
from .photos import PendingPhoto, PhotoSelection
from .storage import PhotoStorage

MISSING_VEHICLE = "Bitte wählen Sie ein Fahrzeug aus."
INVALID_MILEAGE = "Bitte geben Sie einen gültigen Kilometerstand ein."
MISSING_PHOTOS = f"Bitte fügen Sie alle {len(REQUIRED_PHOTO_SLOTS)} Pflichtfotos hinzu."
UNKNOWN_VEHICLE = "Fahrzeug nicht gefunden"
REPORT_NOT_FOUND = "Meldung nicht gefunden"
SAVE_FAILED = "Fehler beim Speichern"

PAGE_SIZE = 20
HISTORY_LIMIT = 20
REPORT_WINDOW_DAYS = 7
CONFIRMATION_SECONDS = 5
MAX_MILEAGE = 9_999_999

PHOTO_FILE_LABELS: dict[PhotoSlot, str] = {
    PhotoSlot.FRONT_LEFT: "Vorne_Links",
    PhotoSlot.FRONT_RIGHT: "Vorne_Rechts",
    PhotoSlot.REAR_LEFT: "Hinten_Links",
    PhotoSlot.REAR_RIGHT: "Hinten_Rechts",
    PhotoSlot.OPTIONAL: "Zusaetzlich",
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')

logger = get_logger(__name__)


def parse_mileage(value: Union[str, int, None]) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value <= MAX_MILEAGE else None
    cleaned = (value or "").strip()
    if not cleaned or not cleaned.isascii() or not cleaned.isdigit():
        return None
    # length check first so huge digit strings never reach int()
    if len(cleaned.lstrip("0")) > len(str(MAX_MILEAGE)):
        return None
    mileage = int(cleaned)
    return mileage if mileage <= MAX_MILEAGE else None


def validate_submission(
    vehicle_id: Optional[int],
    mileage: Union[str, int, None],
    photos: PhotoSelection,
) -> Optional[str]:
    """Return the message of the first violated rule, or ``None`` when complete."""
    if not vehicle_id:
        return MISSING_VEHICLE
    if parse_mileage(mileage) is None:
        return INVALID_MILEAGE
    if photos.required_missing:
        return MISSING_PHOTOS
    return None


def sanitize_filename(value: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("", value).strip(" .")


def photo_filename(report: VehicleReport, photo: ReportPhoto, content_type: str) -> str:
    timestamp = report.created_at.strftime("%Y-%m-%dT%H-%M-%S")
    plate = re.sub(r"[^a-zA-Z0-9]", "_", report.license_plate)
    driver = report.driver
    driver_name = re.sub(r"\s+", "_", f"{driver.first_name}_{driver.last_name}") if driver else "Unbekannt"
    extension = mimetypes.guess_extension(content_type or "") or ".jpg"
    if extension == ".jpe":
        extension = ".jpg"
    label = PHOTO_FILE_LABELS.get(photo.photo_type, photo.photo_type.value)
    return sanitize_filename(f"{timestamp}_{plate}_{driver_name}_{label}{extension}")


class SubmissionState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    INVALID = "invalid"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ReportService:
    database: Database
    storage: PhotoStorage
    clock: Callable[[], datetime] = datetime.now
    page_size: int = PAGE_SIZE
    history_limit: int = HISTORY_LIMIT
    report_window_days: int = REPORT_WINDOW_DAYS

    # Submission
    def submit_report(
        self,
        *,
        driver: User,
        vehicle_id: Optional[int],
        mileage: Union[str, int, None],
        notes: Optional[str],
        photos: PhotoSelection,
    ) -> VehicleReport:
        if driver.role != UserRole.DRIVER:
            raise PermissionError("Nur Fahrer können Meldungen abgeben")
        message = validate_submission(vehicle_id, mileage, photos)
        if message:
            raise ValidationError(message)
        if vehicle_id is None:
            raise ValidationError(MISSING_VEHICLE)
        mileage_value = parse_mileage(mileage)
        if mileage_value is None:
            raise ValidationError(INVALID_MILEAGE)
        vehicle = self.database.get_vehicle(vehicle_id)
        if not vehicle or not vehicle.is_active:
            raise LookupError(UNKNOWN_VEHICLE)
        clean_notes = (notes or "").strip() or None
        now = self.clock()

        stored_urls: list[str] = []
        try:
            with self.database.transaction():
                report = self.database.add_report(
                    user_id=driver.id,
                    vehicle_id=vehicle.id,
                    license_plate=vehicle.license_plate,
                    mileage=mileage_value,
                    notes=clean_notes,
                    report_date=now.date().isoformat(),
                    report_time=now.strftime("%H:%M"),
                )
                for pending in photos:
                    report.photos.append(self._store_photo(report, pending, stored_urls))
        except Exception:
            logger.warning("Report submission by %s rolled back", driver.username, exc_info=True)
            self._discard_stored(stored_urls)
            raise
        report.driver = driver
        logger.info(
            "Report %s submitted by %s for %s with %d photos",
            report.id,
            driver.username,
            vehicle.license_plate,
            len(report.photos),
        )
        return report

    def _store_photo(self, report: VehicleReport, pending: PendingPhoto, stored_urls: list[str]) -> ReportPhoto:
        try:
            url = self.storage.save(pending.upload, report_id=report.id, slot=pending.slot.value)
            stored_urls.append(url)
            return self.database.add_report_photo(
                report_id=report.id,
                photo_url=url,
                photo_type=pending.slot,
                is_required=pending.slot.is_required,
            )
        except (OSError, ValueError, sqlite3.Error) as exc:
            raise PhotoSubmissionError(
                pending.slot.value,
                f"Fehler beim Verarbeiten des Fotos: {pending.slot.label}",
            ) from exc

    def _discard_stored(self, urls: Iterable[str]) -> None:
        for url in urls:
            try:
                self.storage.delete(url)
            except OSError:
                logger.error("Could not remove stored photo %s after rollback", url, exc_info=True)

    # Browsing
    def default_filter(self, today: Optional[date] = None) -> ReportFilter:
        return ReportFilter.default_window(today or self.clock().date(), self.report_window_days)

    def browse_reports(self, *, requester: User, report_filter: ReportFilter, page: int = 1) -> Page[VehicleReport]:
        _require_admin(requester)
        vehicles = self.database.list_vehicles()
        return self.database.list_reports_page(
            report_filter.predicates(vehicles),
            page=page,
            page_size=self.page_size,
        )

    def list_driver_history(self, driver: User) -> List[VehicleReport]:
        return self.database.list_reports([Equals("user_id", driver.id)], limit=self.history_limit)

    def get_report(self, *, requester: User, report_id: int) -> VehicleReport:
        report = self.database.get_report(report_id)
        if not report:
            raise LookupError(REPORT_NOT_FOUND)
        if requester.role != UserRole.ADMIN and report.user_id != requester.id:
            raise PermissionError("Fahrer dürfen nur eigene Meldungen einsehen")
        return report

    # Downloads
    def load_photo(self, *, requester: User, report_id: int, photo_id: int) -> tuple[str, str, bytes]:
        report = self.get_report(requester=requester, report_id=report_id)
        photo = next((photo for photo in report.photos if photo.id == photo_id), None)
        if photo is None:
            raise LookupError("Foto nicht gefunden")
        content_type, data = self.storage.load(photo.photo_url)
        return photo_filename(report, photo, content_type), content_type, data

    def photo_archive(self, *, requester: User, report_id: int) -> tuple[str, bytes]:
        report = self.get_report(requester=requester, report_id=report_id)
        if not report.photos:
            raise LookupError("Keine Fotos vorhanden")
        buffer = io.BytesIO()
        used: Counter[str] = Counter()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for photo in report.photos:
                content_type, data = self.storage.load(photo.photo_url)
                name = photo_filename(report, photo, content_type)
                used[name] += 1
                if used[name] > 1:
                    stem, dot, extension = name.rpartition(".")
                    name = f"{stem}_{used[name]}.{extension}" if dot else f"{name}_{used[name]}"
                archive.writestr(name, data)
        plate = re.sub(r"[^a-zA-Z0-9]", "_", report.license_plate)
        filename = sanitize_filename(f"meldung-{report.id}_{plate}_fotos.zip")
        return filename, buffer.getvalue()

    # Export
    def export_reports_workbook(self, *, requester: User, report_filter: ReportFilter) -> tuple[str, bytes]:
        _require_admin(requester)
        vehicles = self.database.list_vehicles()
        reports = self.database.list_reports(report_filter.predicates(vehicles))

        workbook = Workbook()
        summary_ws = workbook.active
        summary_ws.title = "Übersicht"

        now = self.clock()
        title_font = Font(size=16, bold=True, color="1D4ED8")
        header_font = Font(bold=True, color="1F2937")
        muted_font = Font(color="6B7280")

        summary_ws["A1"] = "Fahrzeugmeldungen"
        summary_ws["A1"].font = title_font
        summary_ws.merge_cells("A1:E1")
        summary_ws["A2"] = f"Erstellt für {requester.display_name}"
        summary_ws["A2"].font = muted_font
        summary_ws.merge_cells("A2:E2")
        summary_ws["A3"] = now.strftime("Erstellt am %Y-%m-%d %H:%M")
        summary_ws["A3"].font = muted_font
        summary_ws.merge_cells("A3:E3")

        total = len(reports)
        period_from = report_filter.date_from.isoformat() if report_filter.date_from else "offen"
        period_to = report_filter.date_to.isoformat() if report_filter.date_to else "offen"
        latest = max((f"{report.report_date} {report.report_time}" for report in reports), default=None)
        average_photos = round(sum(len(report.photos) for report in reports) / total, 1) if total else 0.0

        summary_ws["A5"], summary_ws["B5"] = "Kennzahl", "Wert"
        summary_ws["A5"].font = header_font
        summary_ws["B5"].font = header_font
        metrics = [
            ("Zeitraum", f"{period_from} bis {period_to}"),
            ("Meldungen gesamt", total),
            ("Fahrzeuge", len({report.vehicle_id for report in reports})),
            ("Fahrer", len({report.user_id for report in reports})),
            ("Fotos pro Meldung", average_photos),
            ("Letzte Meldung", latest or "-"),
        ]
        for index, (label, value) in enumerate(metrics, start=6):
            summary_ws.cell(row=index, column=1, value=label)
            summary_ws.cell(row=index, column=2, value=value)

        driver_counts = Counter(report.user_id for report in reports)
        drivers = {report.user_id: report.driver for report in reports}
        if driver_counts:
            summary_ws["D5"] = "Aktivste Fahrer"
            summary_ws["D5"].font = header_font
            summary_ws["E5"] = "Meldungen"
            summary_ws["E5"].font = header_font
            for offset, (user_id, count) in enumerate(driver_counts.most_common(3), start=6):
                driver = drivers.get(user_id)
                summary_ws.cell(row=offset, column=4, value=driver.display_name if driver else f"Fahrer {user_id}")
                summary_ws.cell(row=offset, column=5, value=count)

        for column, width in [(1, 24), (2, 26), (4, 28), (5, 12)]:
            summary_ws.column_dimensions[get_column_letter(column)].width = width

        detail_ws = workbook.create_sheet("Meldungen")
        detail_headers = [
            "Meldung #",
            "Datum",
            "Uhrzeit",
            "Fahrer",
            "Kennzeichen",
            "Konzession",
            "Kilometerstand",
            "Notizen",
            "Fotos",
            "Pflichtfotos vollständig",
        ]
        detail_ws.append(detail_headers)
        for cell in detail_ws[1]:
            cell.font = header_font
            cell.alignment = Alignment(horizontal="center")

        concessions = {vehicle.id: vehicle.concession for vehicle in vehicles}
        highlight = PatternFill(start_color="FEF2F2", end_color="FEF2F2", fill_type="solid")
        for report in reports:
            complete = {photo.photo_type for photo in report.photos} >= set(REQUIRED_PHOTO_SLOTS)
            detail_ws.append(
                [
                    report.id,
                    report.report_date,
                    report.report_time,
                    report.driver.display_name if report.driver else f"Fahrer {report.user_id}",
                    report.license_plate,
                    concessions.get(report.vehicle_id) or "",
                    report.mileage,
                    report.notes or "",
                    len(report.photos),
                    "Ja" if complete else "Nein",
                ]
            )
            if not complete:
                for cell in detail_ws[detail_ws.max_row]:
                    cell.fill = highlight

        detail_ws.auto_filter.ref = detail_ws.dimensions
        detail_ws.freeze_panes = "A2"
        for column_index in range(1, len(detail_headers) + 1):
            column_letter = get_column_letter(column_index)
            max_length = max(
                (len(str(detail_ws.cell(row=row, column=column_index).value or "")) for row in range(1, detail_ws.max_row + 1)),
                default=10,
            )
            detail_ws.column_dimensions[column_letter].width = min(max(12, max_length + 2), 48)

        filename = f"fahrzeugmeldungen-{now.strftime('%Y%m%d-%H%M%S')}.xlsx"
        buffer = io.BytesIO()
        workbook.save(buffer)
        logger.info("Exported %d reports for %s", total, requester.username)
        return filename, buffer.getvalue()


@dataclass
class ReportSubmission:
    """Form state of one driver's report, from first input to confirmation."""

    service: ReportService
    driver: User
    photos: PhotoSelection = field(default_factory=PhotoSelection)
    vehicle_id: Optional[int] = None
    mileage: str = ""
    notes: str = ""
    state: SubmissionState = SubmissionState.IDLE
    error: Optional[str] = None
    last_report: Optional[VehicleReport] = None
    confirmation_until: Optional[datetime] = None
    confirmation_seconds: int = CONFIRMATION_SECONDS

    def submit(self) -> Optional[VehicleReport]:
        self.error = None
        self.state = SubmissionState.VALIDATING
        message = validate_submission(self.vehicle_id, self.mileage, self.photos)
        if message:
            self.state = SubmissionState.INVALID
            self.error = message
            return None

        self.state = SubmissionState.SUBMITTING
        try:
            report = self.service.submit_report(
                driver=self.driver,
                vehicle_id=self.vehicle_id,
                mileage=self.mileage,
                notes=self.notes,
                photos=self.photos,
            )
        except (ValidationError, LookupError, PermissionError, PhotoSubmissionError) as exc:
            self._fail(str(exc))
            return None
        except sqlite3.Error:
            logger.exception("Report submission by %s failed", self.driver.username)
            self._fail(SAVE_FAILED)
            return None

        self.state = SubmissionState.SUCCESS
        self.last_report = report
        self.reset()
        self.confirmation_until = self.service.clock() + timedelta(seconds=self.confirmation_seconds)
        return report

    def reset(self) -> None:
        self.vehicle_id = None
        self.mileage = ""
        self.notes = ""
        self.error = None
        self.photos.clear()

    def confirmation_visible(self, now: Optional[datetime] = None) -> bool:
        if self.confirmation_until is None:
            return False
        return (now or self.service.clock()) < self.confirmation_until

    def dismiss_confirmation(self) -> None:
        self.confirmation_until = None

    def close(self) -> None:
        self.photos.clear()

    def _fail(self, message: str) -> None:
        logger.warning("Report submission by %s failed: %s", self.driver.username, message)
        self.state = SubmissionState.FAILED
        self.error = message


def list_concessions(vehicles: Iterable[Vehicle]) -> List[str]:
    return sorted({vehicle.concession for vehicle in vehicles if vehicle.concession})


def _require_admin(user: User) -> None:
    if user.role != UserRole.ADMIN:
        raise PermissionError("Nur Administratoren können Meldungen auswerten")
