"""
Declarative row filters shared by every listing screen.

A ``ReportFilter`` turns into a list of predicates; ``Database.paginate``
renders them into one WHERE clause. Column names always come from code, values
are always bound as parameters.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Generic, Iterable, List, Optional, Sequence, TypeVar, Union

from .models import Vehicle

T = TypeVar("T")

LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class Equals:
    column: str
    value: Any

    def to_sql(self) -> tuple[str, list[Any]]:
        return f"{self.column} = ?", [self.value]


@dataclass(frozen=True)
class Between:
    """Inclusive range; a missing bound leaves that side open."""

    column: str
    low: Any = None
    high: Any = None

    def to_sql(self) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if self.low is not None:
            clauses.append(f"{self.column} >= ?")
            params.append(self.low)
        if self.high is not None:
            clauses.append(f"{self.column} <= ?")
            params.append(self.high)
        return " AND ".join(clauses) or "1 = 1", params


@dataclass(frozen=True)
class AnyOf:
    """Set membership. An empty set matches no row."""

    column: str
    values: tuple[Any, ...]

    def to_sql(self) -> tuple[str, list[Any]]:
        if not self.values:
            return "1 = 0", []
        placeholders = ",".join("?" for _ in self.values)
        return f"{self.column} IN ({placeholders})", list(self.values)


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring match against any of the columns."""

    columns: tuple[str, ...]
    text: str

    def to_sql(self) -> tuple[str, list[Any]]:
        pattern = f"%{escape_like(self.text.lower())}%"
        clauses = [f"lower_text({column}) LIKE ? ESCAPE '{LIKE_ESCAPE}'" for column in self.columns]
        return "(" + " OR ".join(clauses) + ")", [pattern] * len(self.columns)


Predicate = Union[Equals, Between, AnyOf, Contains]


def escape_like(text: str) -> str:
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def build_where(predicates: Iterable[Predicate]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for predicate in predicates:
        clause, values = predicate.to_sql()
        clauses.append(clause)
        params.extend(values)
    if not clauses:
        return "", []
    return " WHERE " + " AND ".join(clauses), params


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass
class ReportFilter:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    driver_ids: tuple[int, ...] = field(default_factory=tuple)
    vehicle_ids: tuple[int, ...] = field(default_factory=tuple)
    concession: Optional[str] = None
    search: str = ""

    @classmethod
    def default_window(cls, today: date, days: int) -> "ReportFilter":
        return cls(date_from=today - timedelta(days=days), date_to=today)

    def effective_vehicle_ids(self, vehicles: Sequence[Vehicle]) -> Optional[tuple[int, ...]]:
        """Selected vehicle ids unioned with the vehicles of the selected concession.

        ``None`` means the vehicle dimension is unfiltered.
        """
        concession = (self.concession or "").strip()
        if not concession and not self.vehicle_ids:
            return None
        selected = set(self.vehicle_ids)
        if concession:
            selected.update(vehicle.id for vehicle in vehicles if vehicle.concession == concession)
        return tuple(sorted(selected))

    def predicates(self, vehicles: Sequence[Vehicle] = ()) -> list[Predicate]:
        predicates: list[Predicate] = []
        if self.date_from is not None or self.date_to is not None:
            predicates.append(
                Between(
                    "report_date",
                    self.date_from.isoformat() if self.date_from else None,
                    self.date_to.isoformat() if self.date_to else None,
                )
            )
        if self.driver_ids:
            predicates.append(AnyOf("user_id", tuple(self.driver_ids)))
        vehicle_ids = self.effective_vehicle_ids(vehicles)
        if vehicle_ids is not None:
            predicates.append(AnyOf("vehicle_id", vehicle_ids))
        search = self.search.strip()
        if search:
            predicates.append(Contains(("license_plate", "notes"), search))
        return predicates
