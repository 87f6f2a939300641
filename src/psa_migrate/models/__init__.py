"""Data models for migration requests and runs."""

from .request import (
    DuplicatePolicy,
    MaskedFieldPolicy,
    MigrationRequest,
    ContactMoveRequest,
    ConfigurationItemMoveRequest,
    OwnershipTransferRequest,
    OversizePolicy,
    PartialFailureStrategy,
    RetryPolicy,
    ThrottlePolicy,
    TicketAssignmentMode,
)
from .run import (
    ClassCounters,
    CopyStatus,
    CopyUnit,
    MutationKind,
    MutationRecord,
    Run,
    RunState,
    generate_run_id,
)

__all__ = [
    'DuplicatePolicy',
    'MaskedFieldPolicy',
    'MigrationRequest',
    'ContactMoveRequest',
    'ConfigurationItemMoveRequest',
    'OwnershipTransferRequest',
    'OversizePolicy',
    'PartialFailureStrategy',
    'RetryPolicy',
    'ThrottlePolicy',
    'TicketAssignmentMode',
    'ClassCounters',
    'CopyStatus',
    'CopyUnit',
    'MutationKind',
    'MutationRecord',
    'Run',
    'RunState',
    'generate_run_id',
]
