"""Error taxonomy for graph construction and reconciliation.

Build-time errors (invalid resource, cycle, unsupported type) abort a run
before any provider is called. Execution-time errors are recorded against
the affected resource and collected into a ReconciliationError at the end
of the run.
"""

from typing import Optional


class DriverError(Exception):
    """Base class for all reconciliation errors."""


class InvalidResourceError(DriverError):
    """A declared resource failed validation.

    Attributes:
        reference: 'type.name' of the offending resource (if known)
    """

    def __init__(self, message: str, reference: Optional[str] = None):
        self.reference = reference
        if reference:
            message = f"{reference}: {message}"
        super().__init__(message)


class NameExceedsMaxLengthError(InvalidResourceError):
    """Resource name is longer than the allowed maximum."""


class NameContainsInvalidCharactersError(InvalidResourceError):
    """Resource name contains characters outside [A-Za-z0-9_-]."""


class DuplicateResourceError(InvalidResourceError):
    """Two resources share the same (name, type) pair."""


class UnresolvedReferenceError(InvalidResourceError):
    """An explicit depends_on entry points at an undeclared resource."""


class CyclicDependencyError(DriverError):
    """The dependency graph contains a cycle.

    Attributes:
        cycle: References along the cycle, first element repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.cycle)}")


class UnsupportedTypeError(DriverError):
    """No provider is registered for a resource type."""

    def __init__(self, resource_type: str, reference: Optional[str] = None):
        self.resource_type = resource_type
        self.reference = reference
        message = f"No provider registered for type '{resource_type}'"
        if reference:
            message = f"{reference}: {message}"
        super().__init__(message)


class StateError(DriverError):
    """The persisted state file cannot be read."""


class StatusTransitionError(DriverError):
    """A resource was moved between statuses in an illegal order."""


class ProviderError(DriverError):
    """A provider failed to create or destroy one resource."""

    def __init__(self, reference: str, message: str):
        self.reference = reference
        self.message = message
        super().__init__(f"{reference}: {message}")


class SkippedDueToDependencyError(DriverError):
    """A resource was not attempted because a resource it relies on failed."""

    def __init__(self, reference: str, dependency: str):
        self.reference = reference
        self.dependency = dependency
        super().__init__(f"{reference}: skipped, '{dependency}' did not succeed")


class ReconciliationError(DriverError):
    """Aggregate error for a run that left resources failed or skipped.

    Attributes:
        errors: One ProviderError or SkippedDueToDependencyError per resource
    """

    def __init__(self, errors: list[DriverError], cancelled: bool = False):
        self.errors = list(errors)
        self.cancelled = cancelled
        lines = [f"{len(self.errors)} resource(s) did not reconcile"]
        if cancelled:
            lines[0] += " (run cancelled)"
        lines.extend(f"  - {e}" for e in self.errors)
        super().__init__('\n'.join(lines))
