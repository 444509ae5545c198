from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ValidationError


class FieldType(str, Enum):
    TEXT = "text"
    PASSWORD = "password"
    CHOICE = "choice"


@dataclass(frozen=True)
class FormField:
    id: str
    label: str
    field_type: FieldType = FieldType.TEXT
    required: bool = True
    choices: tuple[str, ...] = ()


USER_FORM: tuple[FormField, ...] = (
    FormField("first_name", "Vorname"),
    FormField("last_name", "Nachname"),
    FormField("username", "Benutzername"),
    FormField("password", "Passwort", FieldType.PASSWORD, required=False),
    FormField("role", "Rolle", FieldType.CHOICE, choices=("fahrer", "admin")),
)

VEHICLE_FORM: tuple[FormField, ...] = (
    FormField("license_plate", "Kennzeichen"),
    FormField("brand", "Marke", required=False),
    FormField("model", "Modell", required=False),
    FormField("concession", "Konzession", required=False),
)


def clean_form(definition: tuple[FormField, ...], values: Mapping[str, Any]) -> dict[str, Optional[str]]:
    """Trim every field and fail on the first missing required one.

    Blank optional text becomes ``None``; passwords are passed through untrimmed.
    """
    cleaned: dict[str, Optional[str]] = {}
    for field in definition:
        raw = values.get(field.id)
        if raw is not None and not isinstance(raw, str):
            raise ValidationError(f"{field.label} muss ein Text sein")
        if field.field_type is FieldType.PASSWORD:
            cleaned[field.id] = raw or ""
            continue
        value = (raw or "").strip()
        if not value:
            if field.required:
                raise ValidationError(f"{field.label} ist erforderlich")
            cleaned[field.id] = None
            continue
        if field.choices and value not in field.choices:
            raise ValidationError(f"Ungültige Auswahl für {field.label}")
        cleaned[field.id] = value
    return cleaned
