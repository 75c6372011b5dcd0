"""Error taxonomy for the cohort ETL and survey model stages."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Malformed or incomplete configuration; aborts the run before any computation."""


class DataIntegrityError(RuntimeError):
    """A survey year's source data cannot be harmonized; aborts only that year."""

    def __init__(self, message: str, *, year: int | None = None) -> None:
        super().__init__(message)
        self.year = year


class MissingFieldError(DataIntegrityError):
    """A required source field is absent after applying the year's rename map."""


class SchemaDriftError(DataIntegrityError):
    """A harmonized table's columns differ from the canonical field set."""


class EstimationError(RuntimeError):
    """A single model stage could not be estimated; the request loop continues."""
