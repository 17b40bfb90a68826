class UlasisError(Exception):
    """Base class for domain errors surfaced to callers."""


class NotFoundError(UlasisError):
    """Raised when a questionnaire, question or response does not exist."""

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class InvariantViolationError(UlasisError):
    """
    Raised when a write would break a data invariant,
    e.g. a second answer for the same (response, question) pair.
    """


class RepositoryError(UlasisError):
    """Wraps a storage failure so services never depend on the driver's exceptions."""
