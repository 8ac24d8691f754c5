"""Structured validation outcome shared by requests, parameters and configs."""

from __future__ import annotations

from dataclasses import dataclass

from switchboard.errors import ValidationError


@dataclass(frozen=True)
class ValidationResult:
    """Errors block an operation; warnings are advisory only."""

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def merge(self, other: ValidationResult) -> ValidationResult:
        """Return a result holding both sets of errors and warnings, in order."""
        return ValidationResult(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )

    def with_error(self, message: str) -> ValidationResult:
        return ValidationResult(errors=(*self.errors, message), warnings=self.warnings)

    def with_warning(self, message: str) -> ValidationResult:
        return ValidationResult(errors=self.errors, warnings=(*self.warnings, message))

    def raise_for_errors(self, *, what: str = "Request") -> None:
        """Raise ValidationError when any error was recorded."""
        if self.errors:
            raise ValidationError.from_result(self, what=what)
