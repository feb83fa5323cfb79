"""
Exceptions raised by the purchase order engine.

Business-rule outcomes are never raised; they come back as validation
results. These types cover caller contract violations and failures of the
collaborators the engine cannot do without.
"""


class CostCalculationError(ValueError):
    """Raised when the cost engine is called with impossible inputs."""


class CollaboratorError(Exception):
    """A mandatory collaborator reported failure or timed out."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")


class StorageError(CollaboratorError):
    pass


class AuditError(CollaboratorError):
    pass
