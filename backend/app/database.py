from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, List, Optional, Sequence, TypeVar

from .filters import Equals, Page, Predicate, build_where
from .models import (
    PhotoSlot,
    ReportPhoto,
    SessionToken,
    User,
    UserRole,
    Vehicle,
    VehicleReport,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
REPORT_ORDER = "report_date DESC, report_time DESC, created_at DESC, id DESC"

T = TypeVar("T")


class Database:
    """SQLite backed persistence for users, vehicles and vehicle reports."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS vehicles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    license_plate TEXT NOT NULL UNIQUE,
                    brand TEXT,
                    model TEXT,
                    concession TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS vehicle_reports (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    vehicle_id INTEGER NOT NULL REFERENCES vehicles(id),
                    license_plate TEXT NOT NULL,
                    mileage INTEGER NOT NULL CHECK (mileage >= 0),
                    notes TEXT,
                    report_date TEXT NOT NULL,
                    report_time TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_vehicle_reports_order
                    ON vehicle_reports(report_date DESC, report_time DESC, created_at DESC);
                CREATE TABLE IF NOT EXISTS report_photos (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    report_id INTEGER NOT NULL REFERENCES vehicle_reports(id) ON DELETE CASCADE,
                    photo_url TEXT NOT NULL,
                    photo_type TEXT NOT NULL,
                    is_required INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_report_photos_report ON report_photos(report_id);
                CREATE TABLE IF NOT EXISTS user_favorite_vehicles (
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    vehicle_id INTEGER NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, vehicle_id)
                );
                CREATE TABLE IF NOT EXISTS session_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    token TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
            """
            )

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.create_function("lower_text", 1, _lower_text, deterministic=True)
        return conn

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self._open()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def session(self) -> Generator[sqlite3.Connection, None, None]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        with self._connect() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run every ``session()`` opened inside the block on one connection.

        Commits when the block exits normally and rolls back on any exception.
        """
        if getattr(self._local, "conn", None) is not None:
            raise RuntimeError("Nested transactions are not supported")
        conn = self._open()
        self._local.conn = conn
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    # Generic queries
    def select(
        self,
        table: str,
        predicates: Iterable[Predicate],
        *,
        order_by: str,
        mapper: Callable[[sqlite3.Row], T],
        limit: Optional[int] = None,
    ) -> List[T]:
        where, params = build_where(predicates)
        query = f"SELECT * FROM {table}{where} ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [mapper(row) for row in rows]

    def paginate(
        self,
        table: str,
        predicates: Iterable[Predicate],
        *,
        order_by: str,
        page: int,
        page_size: int,
        mapper: Callable[[sqlite3.Row], T],
    ) -> Page[T]:
        where, params = build_where(predicates)
        page = max(1, page)
        with self.session() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {table}{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM {table}{where} ORDER BY {order_by} LIMIT ? OFFSET ?",
                [*params, page_size, (page - 1) * page_size],
            ).fetchall()
        return Page(items=[mapper(row) for row in rows], total=total, page=page, page_size=page_size)

    # User operations
    def add_user(
        self,
        *,
        username: str,
        first_name: str,
        last_name: str,
        role: UserRole,
        password_hash: str,
        is_active: bool = True,
    ) -> User:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO users (username, first_name, last_name, role, is_active, password_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (username, first_name, last_name, role.value, 1 if is_active else 0, password_hash, _format_datetime(now)),
            )
            user_id = cursor.lastrowid
        return User(
            id=user_id,
            username=username,
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=is_active,
            password_hash=password_hash,
            created_at=now,
        )

    def get_user(self, user_id: int) -> Optional[User]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self, predicates: Sequence[Predicate] = ()) -> List[User]:
        return self.select("users", predicates, order_by="first_name, last_name, id", mapper=_row_to_user)

    def update_user(
        self,
        user_id: int,
        *,
        username: str,
        first_name: str,
        last_name: str,
        role: UserRole,
        password_hash: Optional[str] = None,
    ) -> None:
        assignments = "username = ?, first_name = ?, last_name = ?, role = ?"
        params: list[Any] = [username, first_name, last_name, role.value]
        if password_hash is not None:
            assignments += ", password_hash = ?"
            params.append(password_hash)
        with self.session() as conn:
            conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", (*params, user_id))

    def set_user_active(self, user_id: int, is_active: bool) -> None:
        with self.session() as conn:
            conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (1 if is_active else 0, user_id))

    def delete_user(self, user_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))

    # Vehicle operations
    def add_vehicle(
        self,
        *,
        license_plate: str,
        brand: Optional[str],
        model: Optional[str],
        concession: Optional[str],
        is_active: bool = True,
    ) -> Vehicle:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO vehicles (license_plate, brand, model, concession, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (license_plate, brand, model, concession, 1 if is_active else 0, _format_datetime(now)),
            )
            vehicle_id = cursor.lastrowid
        return Vehicle(
            id=vehicle_id,
            license_plate=license_plate,
            brand=brand,
            model=model,
            concession=concession,
            is_active=is_active,
            created_at=now,
        )

    def get_vehicle(self, vehicle_id: int) -> Optional[Vehicle]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM vehicles WHERE id = ?", (vehicle_id,)).fetchone()
        return _row_to_vehicle(row) if row else None

    def get_vehicle_by_plate(self, license_plate: str) -> Optional[Vehicle]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM vehicles WHERE license_plate = ?", (license_plate,)).fetchone()
        return _row_to_vehicle(row) if row else None

    def list_vehicles(self, *, active_only: bool = False) -> List[Vehicle]:
        predicates = [Equals("is_active", 1)] if active_only else []
        return self.select("vehicles", predicates, order_by="license_plate", mapper=_row_to_vehicle)

    def update_vehicle(
        self,
        vehicle_id: int,
        *,
        license_plate: str,
        brand: Optional[str],
        model: Optional[str],
        concession: Optional[str],
    ) -> None:
        with self.session() as conn:
            conn.execute(
                "UPDATE vehicles SET license_plate = ?, brand = ?, model = ?, concession = ? WHERE id = ?",
                (license_plate, brand, model, concession, vehicle_id),
            )

    def set_vehicle_active(self, vehicle_id: int, is_active: bool) -> None:
        with self.session() as conn:
            conn.execute("UPDATE vehicles SET is_active = ? WHERE id = ?", (1 if is_active else 0, vehicle_id))

    def delete_vehicle(self, vehicle_id: int) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM vehicles WHERE id = ?", (vehicle_id,))

    # Report operations
    def add_report(
        self,
        *,
        user_id: int,
        vehicle_id: int,
        license_plate: str,
        mileage: int,
        notes: Optional[str],
        report_date: str,
        report_time: str,
    ) -> VehicleReport:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO vehicle_reports (
                    user_id, vehicle_id, license_plate, mileage, notes,
                    report_date, report_time, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, vehicle_id, license_plate, mileage, notes, report_date, report_time, _format_datetime(now)),
            )
            report_id = cursor.lastrowid
        return VehicleReport(
            id=report_id,
            user_id=user_id,
            vehicle_id=vehicle_id,
            license_plate=license_plate,
            mileage=mileage,
            notes=notes,
            report_date=report_date,
            report_time=report_time,
            created_at=now,
        )

    def add_report_photo(
        self,
        *,
        report_id: int,
        photo_url: str,
        photo_type: PhotoSlot,
        is_required: bool,
    ) -> ReportPhoto:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO report_photos (report_id, photo_url, photo_type, is_required, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (report_id, photo_url, photo_type.value, 1 if is_required else 0, _format_datetime(now)),
            )
            photo_id = cursor.lastrowid
        return ReportPhoto(
            id=photo_id,
            report_id=report_id,
            photo_url=photo_url,
            photo_type=photo_type,
            is_required=is_required,
            created_at=now,
        )

    def get_report(self, report_id: int) -> Optional[VehicleReport]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM vehicle_reports WHERE id = ?", (report_id,)).fetchone()
        if not row:
            return None
        return self._embed([_row_to_report(row)])[0]

    def list_reports(self, predicates: Sequence[Predicate] = (), *, limit: Optional[int] = None) -> List[VehicleReport]:
        reports = self.select("vehicle_reports", predicates, order_by=REPORT_ORDER, mapper=_row_to_report, limit=limit)
        return self._embed(reports)

    def list_reports_page(self, predicates: Sequence[Predicate], *, page: int, page_size: int) -> Page[VehicleReport]:
        result = self.paginate(
            "vehicle_reports",
            predicates,
            order_by=REPORT_ORDER,
            page=page,
            page_size=page_size,
            mapper=_row_to_report,
        )
        result.items = self._embed(result.items)
        return result

    def list_report_photos(self, report_id: int) -> List[ReportPhoto]:
        return self.select(
            "report_photos",
            [Equals("report_id", report_id)],
            order_by="created_at, id",
            mapper=_row_to_photo,
        )

    def _embed(self, reports: List[VehicleReport]) -> List[VehicleReport]:
        """Attach each report's driver and photos with one query per relation."""
        if not reports:
            return reports
        user_ids = sorted({report.user_id for report in reports})
        report_ids = [report.id for report in reports]
        user_marks = ",".join("?" for _ in user_ids)
        report_marks = ",".join("?" for _ in report_ids)
        with self.session() as conn:
            user_rows = conn.execute(f"SELECT * FROM users WHERE id IN ({user_marks})", user_ids).fetchall()
            photo_rows = conn.execute(
                f"SELECT * FROM report_photos WHERE report_id IN ({report_marks}) ORDER BY created_at, id",
                report_ids,
            ).fetchall()
        users = {row["id"]: _row_to_user(row) for row in user_rows}
        photos: dict[int, list[ReportPhoto]] = {}
        for row in photo_rows:
            photo = _row_to_photo(row)
            photos.setdefault(photo.report_id, []).append(photo)
        for report in reports:
            report.driver = users.get(report.user_id)
            report.photos = photos.get(report.id, [])
        return reports

    # Favorite operations
    def add_favorite(self, user_id: int, vehicle_id: int) -> None:
        with self.session() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_favorite_vehicles (user_id, vehicle_id, created_at) VALUES (?, ?, ?)",
                (user_id, vehicle_id, _format_datetime(_utcnow())),
            )

    def remove_favorite(self, user_id: int, vehicle_id: int) -> None:
        with self.session() as conn:
            conn.execute(
                "DELETE FROM user_favorite_vehicles WHERE user_id = ? AND vehicle_id = ?",
                (user_id, vehicle_id),
            )

    def list_favorite_vehicle_ids(self, user_id: int) -> set[int]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT vehicle_id FROM user_favorite_vehicles WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        return {row["vehicle_id"] for row in rows}

    # Session token operations
    def add_session_token(self, user_id: int, token: str, expires_at: datetime) -> SessionToken:
        created_at = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                "INSERT INTO session_tokens (user_id, token, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (
                    user_id,
                    token,
                    _format_datetime(created_at),
                    _format_datetime(expires_at),
                ),
            )
            token_id = cursor.lastrowid
        return SessionToken(id=token_id, user_id=user_id, token=token, created_at=created_at, expires_at=expires_at)

    def get_session_token(self, token: str) -> Optional[SessionToken]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM session_tokens WHERE token = ?", (token,)).fetchone()
        return _row_to_session_token(row) if row else None

    def delete_session_token(self, token: str) -> None:
        with self.session() as conn:
            conn.execute("DELETE FROM session_tokens WHERE token = ?", (token,))

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        with self.session() as conn:
            conn.execute("DELETE FROM session_tokens WHERE expires_at < ?", (_format_datetime(now),))


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role=UserRole(row["role"]),
        is_active=bool(row["is_active"]),
        password_hash=row["password_hash"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_vehicle(row: sqlite3.Row) -> Vehicle:
    return Vehicle(
        id=row["id"],
        license_plate=row["license_plate"],
        brand=row["brand"],
        model=row["model"],
        concession=row["concession"],
        is_active=bool(row["is_active"]),
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_report(row: sqlite3.Row) -> VehicleReport:
    return VehicleReport(
        id=row["id"],
        user_id=row["user_id"],
        vehicle_id=row["vehicle_id"],
        license_plate=row["license_plate"],
        mileage=row["mileage"],
        notes=row["notes"],
        report_date=row["report_date"],
        report_time=row["report_time"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_photo(row: sqlite3.Row) -> ReportPhoto:
    return ReportPhoto(
        id=row["id"],
        report_id=row["report_id"],
        photo_url=row["photo_url"],
        photo_type=PhotoSlot(row["photo_type"]),
        is_required=bool(row["is_required"]),
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_session_token(row: sqlite3.Row) -> SessionToken:
    return SessionToken(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        created_at=_parse_datetime(row["created_at"]),
        expires_at=_parse_datetime(row["expires_at"]),
    )


def _lower_text(value: Optional[str]) -> str:
    return value.lower() if isinstance(value, str) else ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _format_datetime(value: datetime) -> str:
    return value.strftime(ISO_FORMAT)


def _parse_datetime(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT)
