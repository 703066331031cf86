from dataclasses import dataclass, field
from typing import Iterable


@dataclass
class ValidationResult:
    """
    errors are hard failures, warnings are logged but never block.
    is_valid is derived from errors so the two cannot disagree.
    """
    errors:   list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def merge(self, *others: "ValidationResult") -> "ValidationResult":
        errors, warnings = list(self.errors), list(self.warnings)
        for other in others:
            errors.extend(other.errors)
            warnings.extend(other.warnings)
        return ValidationResult(errors=errors, warnings=warnings)

    @classmethod
    def failure(cls, errors: Iterable[str]) -> "ValidationResult":
        return cls(errors=list(errors))

    def to_dict(self) -> dict:
        return {"isValid": self.is_valid, "errors": list(self.errors), "warnings": list(self.warnings)}
