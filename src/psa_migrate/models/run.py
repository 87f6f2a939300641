"""Run state: copy units, counters, mapping tables and the mutation log."""

import random
import string
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CopyStatus(str, Enum):
    """Lifecycle of a single sub-resource copy."""

    PENDING = 'pending'
    COPIED = 'copied'
    SKIPPED = 'skipped'
    FAILED = 'failed'


class CopyUnit(BaseModel):
    """One sub-resource item being carried to the destination."""

    sub_resource_class: str = Field(..., description='e.g. notes, attachments')
    source_id: str = Field(..., description='Identifier at the source')
    destination_id: Optional[int] = Field(default=None)
    status: CopyStatus = Field(default=CopyStatus.PENDING)
    reason: Optional[str] = Field(default=None)

    def _finish(self, status: CopyStatus, reason: Optional[str] = None) -> None:
        if self.status != CopyStatus.PENDING:
            raise ValueError(
                f'{self.sub_resource_class} {self.source_id} is already {self.status.value}'
            )
        self.status = status
        self.reason = reason

    def mark_copied(self, destination_id: int) -> None:
        self._finish(CopyStatus.COPIED)
        self.destination_id = destination_id

    def mark_skipped(self, reason: str) -> None:
        self._finish(CopyStatus.SKIPPED, reason)

    def mark_failed(self, reason: str) -> None:
        self._finish(CopyStatus.FAILED, reason)


class MutationKind(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'


class MutationRecord(BaseModel):
    """A write the run committed, in execution order."""

    sequence: int
    kind: MutationKind
    entity: str
    entity_id: Optional[int] = None
    detail: str = ''


class ClassCounters(BaseModel):
    """Per sub-resource class (or per entity type) tallies."""

    planned: int = 0
    copied: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0


class RunState(str, Enum):
    """Saga states; FAILED is terminal and reachable from any other state."""

    PREFLIGHTED = 'preflighted'
    CREATED = 'created'
    SUB_RESOURCES_COPYING = 'subResourcesCopying'
    AUDIT_WRITTEN = 'auditWritten'
    SOURCE_COMPENSATED = 'sourceCompensated'
    DONE = 'done'
    FAILED = 'failed'


TERMINAL_STATES = (RunState.DONE, RunState.FAILED)


def generate_run_id(
    prefix: str, source_id: Any, idempotency_key: Optional[str] = None
) -> str:
    """Use the caller's idempotency key, else derive one from time and randomness."""
    if idempotency_key:
        return idempotency_key
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f'{prefix}-{source_id}-{int(time.time() * 1000)}-{suffix}'


class Run(BaseModel):
    """Everything one execution learned and did.

    Built incrementally and returned to the caller; never persisted here.
    """

    run_id: str
    workflow: str
    dry_run: bool = False
    state: RunState = RunState.PREFLIGHTED

    source_id: Optional[int] = None
    destination_id: Optional[int] = None

    plan: Optional[Dict[str, Any]] = None
    preflight: Dict[str, Any] = Field(default_factory=dict)
    # workflow-specific top level report entries
    summary: Dict[str, Any] = Field(default_factory=dict)

    mutation_log: List[MutationRecord] = Field(default_factory=list)
    mapping: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    counters: Dict[str, ClassCounters] = Field(default_factory=dict)
    units: List[CopyUnit] = Field(default_factory=list)

    warnings: List[str] = Field(default_factory=list)
    skipped: Dict[str, List[str]] = Field(default_factory=dict)
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    latency_per_phase: Dict[str, int] = Field(default_factory=dict)

    source_deactivated: bool = False
    audit_notes_created: bool = False

    def transition(self, state: RunState) -> None:
        if self.state in TERMINAL_STATES:
            raise ValueError(f'Run {self.run_id} already finished as {self.state.value}')
        self.state = state

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def counter(self, name: str) -> ClassCounters:
        return self.counters.setdefault(name, ClassCounters())

    def record_mutation(
        self,
        kind: MutationKind,
        entity: str,
        entity_id: Optional[int] = None,
        detail: str = '',
    ) -> MutationRecord:
        record = MutationRecord(
            sequence=len(self.mutation_log) + 1,
            kind=kind,
            entity=entity,
            entity_id=entity_id,
            detail=detail,
        )
        self.mutation_log.append(record)
        return record

    def new_unit(self, sub_resource_class: str, source_id: Any) -> CopyUnit:
        unit = CopyUnit(sub_resource_class=sub_resource_class, source_id=str(source_id))
        self.units.append(unit)
        self.counter(sub_resource_class).planned += 1
        self.mapping.setdefault(sub_resource_class, {})
        self.skipped.setdefault(sub_resource_class, [])
        return unit

    def mark_copied(self, unit: CopyUnit, destination_id: int) -> None:
        unit.mark_copied(destination_id)
        self.mapping.setdefault(unit.sub_resource_class, {})[unit.source_id] = (
            destination_id
        )
        self.counter(unit.sub_resource_class).copied += 1

    def mark_skipped(self, unit: CopyUnit, reason: str) -> None:
        unit.mark_skipped(reason)
        self.skipped.setdefault(unit.sub_resource_class, []).append(unit.source_id)
        self.counter(unit.sub_resource_class).skipped += 1
        self.warn(reason)

    def mark_failed(self, unit: CopyUnit, reason: str) -> None:
        unit.mark_failed(reason)
        self.counter(unit.sub_resource_class).failed += 1
        self.warn(reason)

    def record_failure(
        self,
        entity_type: str,
        entity_id: int,
        error: str,
        retryable: bool,
        counter: Optional[str] = None,
        counted: bool = True,
    ) -> None:
        """Add to the failure list; ``counted=False`` leaves the class counters alone."""
        self.failures.append(
            {
                'entityType': entity_type,
                'id': entity_id,
                'error': error,
                'retryable': retryable,
            }
        )
        if counted:
            self.counter(counter or entity_type).failed += 1

    def has_failure(self, entity_type: str, entity_id: int) -> bool:
        return any(
            f['entityType'] == entity_type and f['id'] == entity_id for f in self.failures
        )

    @property
    def skipped_total(self) -> int:
        return sum(len(v) for v in self.skipped.values())
