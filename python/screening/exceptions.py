"""
Error taxonomy for the screening engine.

Lookup failures are shared with the repository layer so a missing entity
raises the same exception whether it is detected by a repository or by
an engine component.
"""

from database.repositories import (
    RepositoryError,
    NotFoundError,
    EntityNotFoundError,
    CaseNotFoundError,
    DealNotFoundError,
    PersistenceError,
)


class EngineError(Exception):
    """Base exception for screening engine errors."""
    pass


class ProviderError(EngineError):
    """Screening provider failed or returned an unusable response."""
    pass


class ProviderTimeoutError(ProviderError):
    """Screening provider did not answer within the configured timeout."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Screening provider timed out after {timeout_seconds:g}s")


class InvalidStateTransitionError(EngineError):
    """Case status change that would move backwards or stay in place."""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move case from {getattr(current, 'value', current)} "
            f"to {getattr(requested, 'value', requested)}"
        )


class PermissionDeniedError(EngineError):
    """Acting user lacks the permission required for the operation."""

    def __init__(self, role, permission: str):
        self.role = role
        self.permission = permission
        super().__init__(f"Role {getattr(role, 'value', role)} lacks permission '{permission}'")


__all__ = [
    'EngineError',
    'ProviderError',
    'ProviderTimeoutError',
    'InvalidStateTransitionError',
    'PermissionDeniedError',
    'RepositoryError',
    'NotFoundError',
    'EntityNotFoundError',
    'CaseNotFoundError',
    'DealNotFoundError',
    'PersistenceError',
]
