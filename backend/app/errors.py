"""Exception types raised by the Car Melde App services."""

from __future__ import annotations

from typing import Optional


class CarReportError(Exception):
    """Base class for application errors."""


class ValidationError(CarReportError, ValueError):
    """A form or business rule was violated before anything was written."""


class DuplicateEntryError(ValidationError):
    """A unique column (username, license plate) already holds the value."""


class PhotoRejectedError(ValidationError):
    """The photo widget refused a selected file."""


class AuthenticationError(CarReportError):
    pass


class PhotoSubmissionError(CarReportError):
    """Storing or recording one photo of a report failed; the report was rolled back."""

    def __init__(self, slot: str, message: Optional[str] = None) -> None:
        self.slot = slot
        super().__init__(message or f"Fehler beim Verarbeiten des Fotos: {slot}")
