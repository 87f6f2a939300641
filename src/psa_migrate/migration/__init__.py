"""Migration engine, saga orchestration and workflows."""

from .strategy import (
    MigrationStrategy,
    MigrationContext,
    MigrationSession,
    ContactMoveStrategy,
    ConfigurationItemMoveStrategy,
)
from .orchestrator import MigrationOrchestrator
from .transfer import OwnershipTransfer
from .engine import MigrationEngine

__all__ = [
    'MigrationStrategy',
    'MigrationContext',
    'MigrationSession',
    'ContactMoveStrategy',
    'ConfigurationItemMoveStrategy',
    'MigrationOrchestrator',
    'OwnershipTransfer',
    'MigrationEngine',
]
