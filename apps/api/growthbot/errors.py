"""Typed failures raised by the growth percentile core."""
from __future__ import annotations

from typing import Optional


class GrowthError(Exception):
    """Base class for every error the percentile core raises on purpose."""


class InvalidInputError(GrowthError, ValueError):
    """A measurement, age or date that the engine refuses to compute with."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(GrowthError, LookupError):
    """No reference row exists for the requested (sex, measurement, age) key."""

    def __init__(self, age_months: int, measurement_type: str, sex: Optional[str] = None) -> None:
        self.age_months = age_months
        self.measurement_type = measurement_type
        self.sex = sex
        super().__init__(f"No {measurement_type} reference data for {age_months} months")


class LookupFailedError(GrowthError):
    """A remote reference lookup failed or timed out; safe to retry later."""


class BuildError(GrowthError):
    """Source tables could not be turned into a complete reference table."""
