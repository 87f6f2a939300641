"""Migration error taxonomy.

Every fatal error names the entity kind, id and phase it concerns so the
failing record can be located without reading logs.
"""

from typing import Any, Dict, Optional


class MigrationError(Exception):
    """Base exception for migration failures."""

    def __init__(
        self,
        message: str,
        entity_kind: Optional[str] = None,
        entity_id: Optional[int] = None,
        phase: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.phase = phase
        # partial run report, attached once the run has started mutating
        self.report: Dict[str, Any] = {}

    def context(self) -> Dict[str, Any]:
        return {
            'entityKind': self.entity_kind,
            'entityId': self.entity_id,
            'phase': self.phase,
        }

    def __str__(self) -> str:
        where = [
            part
            for part in (
                self.phase,
                f'{self.entity_kind} {self.entity_id}'
                if self.entity_kind and self.entity_id is not None
                else self.entity_kind,
            )
            if part
        ]
        if where:
            return f'{self.message} [{", ".join(where)}]'
        return self.message


class PreflightError(MigrationError):
    """Raised before any mutation; the whole run is safe to retry."""

    def __init__(self, message: str, entity_kind=None, entity_id=None):
        super().__init__(message, entity_kind, entity_id, phase='preflight')


class EntityNotFoundError(PreflightError):
    pass


class NoOpMoveError(PreflightError):
    """Destination scope equals the current scope."""

    pass


class ScopeMismatchError(PreflightError):
    """A destination sub-entity does not belong to the destination scope."""

    pass


class InactiveTargetError(PreflightError):
    pass


class DuplicateTargetError(PreflightError):
    """An equivalent record already exists at the destination."""

    def __init__(self, message: str, entity_kind=None, entity_id=None, existing_id=None):
        super().__init__(message, entity_kind, entity_id)
        self.existing_id = existing_id


class DiscoveryLimitError(PreflightError):
    """A discovered work set is larger than the configured ceiling."""

    pass


class StatusResolutionError(PreflightError):
    pass


class OversizeItemError(MigrationError):
    """A single upload exceeds the per-item byte limit under the fail policy."""

    def __init__(self, message: str, size_bytes: int, limit_bytes: int, **kwargs):
        super().__init__(message, **kwargs)
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class MaskedFieldError(MigrationError):
    """A redacted value was found under the fail policy."""

    pass


class RetryExhaustedError(MigrationError):
    """A transient failure persisted through every retry."""

    def __init__(self, message: str, attempts: int, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class VerificationError(MigrationError):
    """A post-create read disagrees with what was requested."""

    pass


class MigrationFailedError(MigrationError):
    """A transport or unexpected error ended a run after it started mutating.

    The original error is chained as ``__cause__``; ``report`` holds the
    partial run report including any compensation warnings. Migration errors
    raised in the same situation are re-raised as themselves with ``report``
    attached.
    """

    def __init__(
        self,
        message: str,
        report: Optional[Dict[str, Any]] = None,
        entity_kind=None,
        entity_id=None,
        phase=None,
    ):
        super().__init__(message, entity_kind, entity_id, phase)
        self.report = report or {}
