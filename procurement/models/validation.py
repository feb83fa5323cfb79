from typing import Any, List, Optional
from pydantic import BaseModel, Field

class ValidationError(BaseModel):
    """A rule violation. Non-blocking errors are advisory."""
    field: Optional[str] = None
    code: str
    message: str
    severity: str = "error" # error, warning, info
    blocking_error: bool = True

class ValidationWarning(BaseModel):
    field: Optional[str] = None
    code: str
    message: str
    recommendation: Optional[str] = None

class ValidationResult(BaseModel):
    """
    Outcome of a validation pass. Every violated rule is listed, the caller
    decides how to present them.
    """
    is_valid: bool = True
    errors: List[ValidationError] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)

    def add_error(self, code: str, message: str, field: Optional[str] = None, blocking: bool = True) -> None:
        self.errors.append(ValidationError(field=field, code=code, message=message, blocking_error=blocking))
        self.refresh()

    def add_warning(self, code: str, message: str, field: Optional[str] = None, recommendation: Optional[str] = None) -> None:
        self.warnings.append(ValidationWarning(field=field, code=code, message=message, recommendation=recommendation))

    def refresh(self) -> None:
        self.is_valid = not any(e.blocking_error for e in self.errors)

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def first_message(self) -> Optional[str]:
        return self.errors[0].message if self.errors else None

class ReceivingAdjustment(BaseModel):
    """Ledger-style note of something the receipt changed or still owes."""
    type: str # quantity, quality, expiry, damage
    description: str
    original_value: Any = None
    adjusted_value: Any = None
    reason: str
    requires_approval: bool = False

class ReceivingValidationResult(ValidationResult):
    can_proceed: bool = True
    requires_approval: bool = False
    required_roles: List[str] = Field(default_factory=list)
    adjustments: List[ReceivingAdjustment] = Field(default_factory=list)

    def require_approval(self, roles: List[str]) -> None:
        self.requires_approval = True
        for role in roles:
            if role not in self.required_roles:
                self.required_roles.append(role)

    def refresh(self) -> None:
        super().refresh()
        # Approval gating is reported separately and never blocks on its own
        self.can_proceed = self.is_valid
