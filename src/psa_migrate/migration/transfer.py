"""Ownership transfer: reassign a resource's open work to another resource.

Unlike the single-entity moves this workflow discovers a set of records by
query, reassigns them one by one and records per-record failures instead of
stopping at the first one.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger
from pydantic import BaseModel, Field

from ..api.exceptions import PSAAPIError, PSANotFoundError
from ..models.request import OwnershipTransferRequest, TicketAssignmentMode
from ..models.run import MutationKind, Run, RunState, generate_run_id
from .audit import resolve_template
from .exceptions import (
    DiscoveryLimitError,
    EntityNotFoundError,
    InactiveTargetError,
    MigrationFailedError,
    NoOpMoveError,
    PreflightError,
    RetryExhaustedError,
    StatusResolutionError,
)
from .reference import ReferenceIntegrityHelper
from .report import PhaseTimer, build_report
from .retry import RetryExecutor, is_transient_error
from .strategy import MigrationContext, as_int, eq, sorted_by_id

TERMINAL_STATUS_LABELS = frozenset({'closed', 'complete', 'completed', 'done', 'inactive'})
DATE_ONLY_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
AUDIT_NOTE_TITLE = 'Ownership Transferred'

PLAN_FIELDS: Dict[str, tuple] = {
    'tickets': (
        'id', 'ticketNumber', 'title', 'dueDateTime', 'assignedResourceID', 'companyID', 'status',
    ),
    'ticketSecondaryResources': ('id', 'ticketID', 'resourceID', 'roleID'),
    'tasks': (
        'id', 'taskNumber', 'title', 'endDateTime', 'assignedResourceID', 'projectID',
        'billingCodeID', 'status',
    ),
    'taskSecondaryResources': ('id', 'taskID', 'resourceID', 'roleID'),
    'projects': (
        'id', 'projectNumber', 'projectName', 'endDateTime', 'projectLeadResourceID',
        'companyID', 'status',
    ),
    'serviceCallTicketResources': ('id', 'serviceCallTicketID', 'resourceID'),
    'serviceCallTaskResources': ('id', 'serviceCallTaskID', 'resourceID'),
    'appointments': ('id', 'title', 'startDateTime', 'endDateTime', 'resourceID', 'companyID'),
    'companies': ('id', 'companyName', 'ownerResourceID', 'isActive'),
    'opportunities': ('id', 'title', 'companyID', 'ownerResourceID', 'status', 'amount'),
}


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = str(value or '').strip()
    if not text:
        return None
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DueCutoff(BaseModel):
    """Due-date cut-off; a bare date includes the whole day."""

    raw: Optional[str] = None
    date_only: bool = False

    @classmethod
    def parse(cls, raw: Optional[str]) -> 'DueCutoff':
        """Build a cut-off from ``YYYY-MM-DD`` or an ISO-8601 datetime.

        Raises:
            PreflightError: If the value is neither
        """
        value = (raw or '').strip()
        if not value:
            return cls()
        if DATE_ONLY_PATTERN.match(value):
            try:
                date.fromisoformat(value)
            except ValueError:
                pass
            else:
                return cls(raw=value, date_only=True)
        elif parse_datetime(value) is not None:
            return cls(raw=value)
        raise PreflightError(
            'Due cut-off is invalid. Use YYYY-MM-DD or a valid ISO-8601 datetime. '
            f'Received: "{value}".'
        )

    @property
    def active(self) -> bool:
        return self.raw is not None

    @property
    def day(self) -> Optional[str]:
        return self.raw[:10] if self.raw else None

    @property
    def next_day(self) -> Optional[str]:
        if not self.raw:
            return None
        return (date.fromisoformat(self.raw[:10]) + timedelta(days=1)).isoformat()

    @property
    def ticket_bound(self) -> Optional[str]:
        """Exclusive bound for a bare date, else the inclusive datetime."""
        if not self.raw:
            return None
        return f'{self.next_day}T00:00:00Z' if self.date_only else self.raw

    def datetime_filters(self, field: str) -> List[Dict[str, Any]]:
        op = 'lt' if self.date_only else 'lte'
        return [
            {'field': field, 'op': op, 'value': self.ticket_bound},
            {'field': field, 'op': 'exist'},
        ]

    def date_filters(self, field: str) -> List[Dict[str, Any]]:
        return [
            {'field': field, 'op': 'lt', 'value': self.next_day},
            {'field': field, 'op': 'exist'},
        ]

    def includes(self, value: Any, has_time: bool, include_missing: bool) -> bool:
        """Whether a due value falls on or before the cut-off."""
        if not self.raw:
            return True
        if value is None or not str(value).strip():
            return include_missing
        if not has_time:
            return str(value)[:10] <= self.day

        due = parse_datetime(value)
        if due is None:
            return False
        if self.date_only:
            return due < parse_datetime(self.ticket_bound)
        return due <= parse_datetime(self.raw)


class StatusFilter(BaseModel):
    """Status restriction resolved from picklist metadata."""

    mode: str = Field(default='none', description='in, notIn or none')
    values: List[int] = Field(default_factory=list)

    def filters(self, field: str = 'status') -> List[Dict[str, Any]]:
        if self.mode == 'none':
            return []
        return [{'field': field, 'op': self.mode, 'value': list(self.values)}]


def resolve_status_filter(
    picklist: List[Dict[str, Any]], label: str, request: OwnershipTransferRequest
) -> StatusFilter:
    """Pick open statuses: value allowlist, then label allowlist, then exclude terminal labels.

    Raises:
        StatusResolutionError: When nothing matches
    """
    if not picklist:
        return StatusFilter()

    if request.status_allowlist_by_value:
        allowed = set(request.status_allowlist_by_value)
        values = [
            v for v in (as_int(item.get('value')) for item in picklist)
            if v is not None and v in allowed
        ]
        if not values:
            raise StatusResolutionError(f'No {label} statuses matched status_allowlist_by_value.')
        return StatusFilter(mode='in', values=values)

    if request.status_allowlist_by_label:
        labels = {v.strip().lower() for v in request.status_allowlist_by_label}
        values = [
            v
            for v in (
                as_int(item.get('value'))
                for item in picklist
                if str(item.get('label') or '').strip().lower() in labels
            )
            if v is not None
        ]
        if not values:
            raise StatusResolutionError(f'No {label} statuses matched status_allowlist_by_label.')
        return StatusFilter(mode='in', values=values)

    closed = [
        v
        for v in (
            as_int(item.get('value'))
            for item in picklist
            if str(item.get('label') or '').strip().lower() in TERMINAL_STATUS_LABELS
        )
        if v is not None
    ]
    if not closed:
        raise StatusResolutionError(
            f'Unable to resolve closed/terminal statuses for {label}. Provide explicit allowlists.'
        )
    return StatusFilter(mode='notIn', values=closed)


def resource_display_name(record: Optional[Dict[str, Any]], fallback_id: int) -> str:
    if not record:
        return f'Resource {fallback_id}'
    full_name = str(record.get('fullName') or '').strip()
    if full_name:
        return full_name
    combined = f'{record.get("firstName") or ""} {record.get("lastName") or ""}'.strip()
    if combined:
        return combined
    return str(record.get('userName') or '').strip() or f'Resource {fallback_id}'


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, RetryExhaustedError) or is_transient_error(error)


def ensure_below_limit(items: List[Dict[str, Any]], limit: int, label: str, setting: str) -> None:
    if len(items) > limit:
        raise DiscoveryLimitError(
            f'Found ≥{len(items)} {label}. Exceeds {setting} ({limit}). '
            f'Narrow your filters (add due window, reduce scope) or increase {setting}.'
        )


class OwnershipTransfer:
    """One ownership transfer run."""

    workflow = 'ownership-transfer'

    def __init__(self, context: MigrationContext, request: OwnershipTransferRequest):
        self.context = context
        self.request = request
        self.client = context.client
        self.metadata = context.metadata
        self.run = Run(
            run_id=generate_run_id('transfer', request.source_resource_id, request.idempotency_key),
            workflow=self.workflow,
            dry_run=request.dry_run,
            source_id=request.source_resource_id,
            destination_id=request.destination_resource_id,
        )
        self.executor = RetryExecutor(request.retry_policy, sleep=context.sleep)
        self.references = ReferenceIntegrityHelper(self.client, self.run)
        self.timer = PhaseTimer(self.run, clock=context.clock)
        self.logger = logger.bind(component='OwnershipTransfer')

        self.cutoff = DueCutoff()
        self.status_filters: Dict[str, StatusFilter] = {}
        self.items: Dict[str, List[Dict[str, Any]]] = {name: [] for name in PLAN_FIELDS}
        self.names: Dict[str, str] = {}
        self._reassigned: Dict[str, Set[int]] = {}
        self._ticket_filters: List[Dict[str, Any]] = []

    async def execute(self) -> Dict[str, Any]:
        """Discover, then reassign unless this is a dry run.

        Raises:
            PreflightError: Invalid input or an oversized discovered set
            MigrationFailedError: An unexpected error once writes began
        """
        request = self.request
        run = self.run
        self.logger.info(
            f'Starting ownership transfer {run.run_id}: resource '
            f'{request.source_resource_id} -> {request.destination_resource_id}'
            f'{" (dry run)" if request.dry_run else ""}'
        )

        with self.timer.phase('preflight'):
            source, destination = await self._preflight()
        with self.timer.phase('discover'):
            await self._discover()

        for name, items in self.items.items():
            if items:
                run.counter(name).planned = len(items)
        plan = self._plan(source, destination)
        run.preflight = {
            'sourceResourceName': self.names['source'],
            'destinationResourceName': self.names['destination'],
            'statusSetsUsed': plan['filters']['statusSetsUsed'],
        }

        if request.dry_run:
            run.plan = plan
            run.transition(RunState.DONE)
            return self._finish()

        try:
            with self.timer.phase('reassign'):
                await self._reassign_all()
            with self.timer.phase('auditNotes'):
                if request.add_audit_notes:
                    await self._write_audit_notes()
            await self._check_remaining_tickets()
            run.transition(RunState.DONE)
        except Exception as e:
            run.transition(RunState.FAILED)
            self.logger.error(f'Ownership transfer {run.run_id} failed: {e}')
            raise MigrationFailedError(
                f'Ownership transfer failed: {e}',
                report=self._finish(),
                entity_kind='resource',
                entity_id=request.source_resource_id,
                phase='reassign',
            ) from e

        failed = len(run.failures)
        self.logger.info(f'Ownership transfer {run.run_id} finished with {failed} failure(s)')
        return self._finish()

    def _finish(self) -> Dict[str, Any]:
        self.run.summary.update(
            {
                'sourceResourceId': self.request.source_resource_id,
                'destinationResourceId': self.request.destination_resource_id,
                'failures': list(self.run.failures),
            }
        )
        self.timer.finish()
        return build_report(self.run)

    async def _preflight(self):
        request = self.request
        if request.source_resource_id == request.destination_resource_id:
            raise NoOpMoveError(
                'Source and receiving resource are the same. No transfer needed.',
                'resource',
                request.source_resource_id,
            )

        source = await self.client.get_entity(f'Resources/{request.source_resource_id}')
        if source is None:
            raise EntityNotFoundError(
                f'Source resource {request.source_resource_id} was not found.',
                'resource',
                request.source_resource_id,
            )
        destination = await self.client.get_entity(f'Resources/{request.destination_resource_id}')
        if destination is None:
            raise EntityNotFoundError(
                f'Receiving resource {request.destination_resource_id} was not found.',
                'resource',
                request.destination_resource_id,
            )
        if destination.get('isActive') not in (True, 1):
            raise InactiveTargetError(
                f'Receiving resource {request.destination_resource_id} is inactive. '
                'Select an active receiving resource.',
                'resource',
                request.destination_resource_id,
            )

        self.names = {
            'source': resource_display_name(source, request.source_resource_id),
            'destination': resource_display_name(destination, request.destination_resource_id),
        }
        self.cutoff = DueCutoff.parse(request.due_before)

        if request.only_open_active:
            wanted = {
                'ticket': request.include_tickets,
                'task': request.include_tasks,
                'project': request.include_projects and request.project_includes_lead,
                'opportunity': request.include_opportunities,
            }
            for kind, enabled in wanted.items():
                if enabled:
                    picklist = await self.metadata.get_picklist(kind, 'status')
                    self.status_filters[kind] = resolve_status_filter(
                        picklist, kind.capitalize(), request
                    )
        return source, destination

    def _status(self, kind: str) -> List[Dict[str, Any]]:
        status = self.status_filters.get(kind)
        return status.filters() if status else []

    async def _query(self, collection: str, filters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted_by_id(await self.client.query_all(collection, filters))

    async def _discover(self) -> None:
        request = self.request
        source_id = request.source_resource_id
        cutoff = self.cutoff
        limit = request.max_items_per_entity
        items = self.items
        due_filter = cutoff.active and not request.include_items_with_no_due_date

        scope: List[Dict[str, Any]] = []
        if request.company_ids:
            wanted = sorted(set(request.company_ids))
            companies = await self._query('Companies', [{'field': 'id', 'op': 'in', 'value': wanted}])
            found = {as_int(c.get('id')) for c in companies}
            missing = [cid for cid in wanted if cid not in found]
            if missing:
                raise EntityNotFoundError(
                    'Some companies in company allowlist were not found: '
                    + ', '.join(str(m) for m in missing),
                    'company',
                )
            ensure_below_limit(companies, request.max_companies, 'companies', 'max_companies')
            scope = [{'field': 'companyID', 'op': 'in', 'value': wanted}]
            if request.include_companies:
                items['companies'] = companies
        elif request.include_companies:
            items['companies'] = await self._query(
                'Companies', [eq('ownerResourceID', source_id), eq('isActive', True)]
            )
            ensure_below_limit(items['companies'], request.max_companies, 'companies', 'max_companies')

        if request.include_tickets:
            filters = [eq('assignedResourceID', source_id), *scope, *self._status('ticket')]
            if due_filter:
                filters.extend(cutoff.datetime_filters('dueDateTime'))
            self._ticket_filters = filters
            items['tickets'] = [
                t
                for t in await self._query('Tickets', filters)
                if cutoff.includes(t.get('dueDateTime'), True, request.include_items_with_no_due_date)
            ]
            ensure_below_limit(items['tickets'], limit, 'tickets', 'max_items_per_entity')

            if request.ticket_assignment_mode == TicketAssignmentMode.PRIMARY_AND_SECONDARY:
                # rows on tickets in the primary set are cleared inline
                ticket_ids = {as_int(t.get('id')) for t in items['tickets']}
                items['ticketSecondaryResources'] = [
                    row
                    for row in await self._query(
                        'TicketSecondaryResources', [eq('resourceID', source_id)]
                    )
                    if as_int(row.get('ticketID')) not in ticket_ids
                ]
                ensure_below_limit(
                    items['ticketSecondaryResources'], limit,
                    'ticket secondary resources', 'max_items_per_entity',
                )

        if request.include_tasks:
            filters = [eq('assignedResourceID', source_id), *scope, *self._status('task')]
            if due_filter:
                filters.extend(cutoff.date_filters('endDateTime'))
            items['tasks'] = [
                t
                for t in await self._query('Tasks', filters)
                if cutoff.includes(t.get('endDateTime'), False, request.include_items_with_no_due_date)
            ]
            ensure_below_limit(items['tasks'], limit, 'tasks', 'max_items_per_entity')

        if request.include_task_secondary_resources:
            task_ids = {as_int(t.get('id')) for t in items['tasks']}
            rows = await self._query('TaskSecondaryResources', [eq('resourceID', source_id)])
            if request.include_tasks and task_ids:
                rows = [row for row in rows if as_int(row.get('taskID')) in task_ids]
            items['taskSecondaryResources'] = rows
            ensure_below_limit(rows, limit, 'task secondary resources', 'max_items_per_entity')

        if request.include_projects and request.project_includes_lead:
            filters = [eq('projectLeadResourceID', source_id), *scope, *self._status('project')]
            if due_filter:
                filters.extend(cutoff.date_filters('endDateTime'))
            items['projects'] = [
                p
                for p in await self._query('Projects', filters)
                if cutoff.includes(p.get('endDateTime'), False, request.include_items_with_no_due_date)
            ]
            ensure_below_limit(items['projects'], limit, 'projects', 'max_items_per_entity')

        if request.include_service_call_assignments:
            for name, collection, label in (
                ('serviceCallTicketResources', 'ServiceCallTicketResources', 'service call ticket resources'),
                ('serviceCallTaskResources', 'ServiceCallTaskResources', 'service call task resources'),
            ):
                items[name] = await self._query(collection, [eq('resourceID', source_id)])
                ensure_below_limit(items[name], limit, label, 'max_items_per_entity')

        if request.include_appointments:
            filters = [eq('resourceID', source_id), *scope]
            if due_filter:
                filters.append({'field': 'endDateTime', 'op': 'exist'})
            items['appointments'] = [
                a
                for a in await self._query('Appointments', filters)
                if cutoff.includes(a.get('endDateTime'), True, request.include_items_with_no_due_date)
            ]
            ensure_below_limit(items['appointments'], limit, 'appointments', 'max_items_per_entity')

        if request.include_opportunities:
            filters = [eq('ownerResourceID', source_id), *self._status('opportunity'), *scope]
            items['opportunities'] = await self._query('Opportunities', filters)
            ensure_below_limit(items['opportunities'], limit, 'opportunities', 'max_items_per_entity')

        found = ', '.join(f'{len(v)} {k}' for k, v in items.items() if v)
        self.logger.info(f'Discovered {found or "no work to transfer"}')

    def _plan(self, source: Dict[str, Any], destination: Dict[str, Any]) -> Dict[str, Any]:
        request = self.request
        plan: Dict[str, Any] = {
            'sourceResource': {
                'id': request.source_resource_id,
                'name': self.names['source'],
                'isActive': source.get('isActive') in (True, 1),
            },
            'destinationResource': {
                'id': request.destination_resource_id,
                'name': self.names['destination'],
                'isActive': True,
            },
            'filters': {
                'statusSetsUsed': {k: list(v.values) for k, v in sorted(self.status_filters.items())},
                'dueBeforeTickets': self.cutoff.ticket_bound,
                'dueBeforeTasksProjects': self.cutoff.day,
                'companyIds': sorted(set(request.company_ids)),
            },
        }
        for name, fields in PLAN_FIELDS.items():
            plan[name] = [{f: item.get(f) for f in fields} for item in self.items[name]]
        return plan

    async def _apply(
        self,
        counter: str,
        entity_type: str,
        entity_id: int,
        operation: Callable[[], Awaitable[Any]],
        detail: str,
        new_id: Optional[int] = None,
    ) -> bool:
        """Run one reassignment; a failure is recorded and the loop moves on."""
        try:
            result = await self.references.call(
                lambda: self.executor.call(operation, f'{detail} {entity_type} {entity_id}')
            )
        except Exception as e:
            self.logger.warning(f'Failed to {detail} {entity_type} {entity_id}: {e}')
            self.run.record_failure(entity_type, entity_id, str(e), is_retryable(e), counter=counter)
            return False
        self.run.counter(counter).updated += 1
        mapped = new_id if new_id is not None else (result if isinstance(result, int) else entity_id)
        self.run.mapping.setdefault(counter, {})[str(entity_id)] = mapped
        self.run.record_mutation(MutationKind.UPDATE, entity_type, entity_id, detail)
        self._reassigned.setdefault(entity_type, set()).add(entity_id)
        return True

    async def _patch(self, counter: str, entity_type: str, collection: str, entity_id: int, fields: Dict[str, Any]) -> bool:
        return await self._apply(
            counter,
            entity_type,
            entity_id,
            lambda: self.client.update(collection, {'id': entity_id, **fields}),
            'reassign',
        )

    async def _reassign_all(self) -> None:
        request = self.request
        destination_id = request.destination_resource_id
        items = self.items

        for company in items['companies']:
            await self._patch(
                'companies', 'company', 'Companies', as_int(company.get('id')) or 0,
                {'ownerResourceID': destination_id},
            )

        for ticket in items['tickets']:
            ticket_id = as_int(ticket.get('id')) or 0
            if not await self._patch(
                'tickets', 'ticket', 'Tickets', ticket_id, {'assignedResourceID': destination_id}
            ):
                continue
            if request.ticket_assignment_mode == TicketAssignmentMode.PRIMARY_AND_SECONDARY:
                await self._clear_ticket_secondaries(ticket_id)

        for row in items['ticketSecondaryResources']:
            await self._move_secondary(
                row, 'ticketSecondaryResources', 'ticketSecondaryResource',
                'TicketSecondaryResources', 'ticketID', 'Ticket',
                lambda parent_id: self._ticket_has_primary(parent_id),
            )

        for task in items['tasks']:
            task_id = as_int(task.get('id')) or 0
            billing_code_id = as_int(task.get('billingCodeID'))
            if billing_code_id is None:
                self.run.warn(f'Task {task_id}: billingCodeID missing, PATCH may be rejected by API.')
            await self._patch(
                'tasks', 'task', 'Tasks', task_id,
                {'assignedResourceID': destination_id, 'billingCodeID': billing_code_id},
            )

        for project in items['projects']:
            await self._patch(
                'projects', 'project', 'Projects', as_int(project.get('id')) or 0,
                {'projectLeadResourceID': destination_id},
            )

        for row in items['taskSecondaryResources']:
            await self._move_secondary(
                row, 'taskSecondaryResources', 'taskSecondaryResource',
                'TaskSecondaryResources', 'taskID', 'Task',
                lambda parent_id: self._task_has_primary(parent_id),
            )

        for name, entity_type, collection, parent_field in (
            ('serviceCallTicketResources', 'serviceCallTicketResource',
             'ServiceCallTicketResources', 'serviceCallTicketID'),
            ('serviceCallTaskResources', 'serviceCallTaskResource',
             'ServiceCallTaskResources', 'serviceCallTaskID'),
        ):
            for row in items[name]:
                await self._recreate(row, name, entity_type, collection, {
                    parent_field: as_int(row.get(parent_field)) or 0,
                    'resourceID': destination_id,
                })

        for appointment in items['appointments']:
            await self._patch(
                'appointments', 'appointment', 'Appointments', as_int(appointment.get('id')) or 0,
                {'resourceID': destination_id},
            )

        for opportunity in items['opportunities']:
            await self._patch(
                'opportunities', 'opportunity', 'Opportunities', as_int(opportunity.get('id')) or 0,
                {'ownerResourceID': destination_id},
            )

    async def _clear_ticket_secondaries(self, ticket_id: int) -> None:
        """The destination is primary now, so the source's secondary rows go away."""
        try:
            rows = await self._query(
                'TicketSecondaryResources',
                [eq('resourceID', self.request.source_resource_id), eq('ticketID', ticket_id)],
            )
            for row in rows:
                if not as_int(row.get('roleID')):
                    continue
                await self.executor.call(
                    lambda: self.client.delete(f'TicketSecondaryResources/{row.get("id")}'),
                    f'clear secondary assignment on ticket {ticket_id}',
                )
                self.run.record_mutation(
                    MutationKind.DELETE, 'ticketSecondaryResource', as_int(row.get('id')),
                    f'ticket {ticket_id}',
                )
                self.run.warn(
                    f'Ticket {ticket_id}: secondary assignment for source resource cleared '
                    '(destination is now primary).'
                )
        except Exception as e:
            self.run.record_failure(
                'ticketSecondaryResource', ticket_id, str(e), is_retryable(e),
                counted=False,
            )

    async def _ticket_has_primary(self, ticket_id: int) -> bool:
        ticket = await self.client.get_entity(f'Tickets/{ticket_id}')
        return bool(ticket) and as_int(ticket.get('assignedResourceID')) == self.request.destination_resource_id

    async def _task_has_primary(self, task_id: int) -> bool:
        if task_id in self._reassigned.get('task', set()):
            return True
        task = await self.client.get_entity(f'Tasks/{task_id}')
        return bool(task) and as_int(task.get('assignedResourceID')) == self.request.destination_resource_id

    async def _move_secondary(
        self,
        row: Dict[str, Any],
        counter: str,
        entity_type: str,
        collection: str,
        parent_field: str,
        parent_label: str,
        destination_is_primary: Callable[[int], Awaitable[bool]],
    ) -> None:
        """Delete the source's secondary row and recreate it for the destination.

        When the destination already holds the primary assignment the row is
        only deleted.
        """
        row_id = as_int(row.get('id')) or 0
        parent_id = as_int(row.get(parent_field)) or 0
        role_id = as_int(row.get('roleID'))
        if not role_id:
            reason = f'{parent_label} secondary resource {row_id} has no roleID and was skipped.'
            self.run.skipped.setdefault(counter, []).append(str(row_id))
            self.run.counter(counter).skipped += 1
            self.run.warn(reason)
            return

        try:
            primary = await destination_is_primary(parent_id)
        except PSAAPIError as e:
            self.run.record_failure(entity_type, row_id, str(e), is_retryable(e), counter=counter)
            return

        if primary:
            if await self._apply(
                counter, entity_type, row_id,
                lambda: self.client.delete(f'{collection}/{row_id}'),
                'clear',
            ):
                self.run.warn(
                    f'{parent_label} {parent_id}: secondary assignment for source resource '
                    'cleared (destination is already primary).'
                )
            return

        await self._recreate(row, counter, entity_type, collection, {
            parent_field: parent_id,
            'resourceID': self.request.destination_resource_id,
            'roleID': role_id,
        })

    async def _recreate(
        self,
        row: Dict[str, Any],
        counter: str,
        entity_type: str,
        collection: str,
        payload: Dict[str, Any],
    ) -> None:
        row_id = as_int(row.get('id')) or 0

        # the delete is never repeated: a retried create must not hit a row that is gone
        try:
            await self.executor.call(
                lambda: self.client.delete(f'{collection}/{row_id}'),
                f'remove {entity_type} {row_id}',
            )
        except Exception as e:
            self.logger.warning(f'Failed to remove {entity_type} {row_id}: {e}')
            self.run.record_failure(entity_type, row_id, str(e), is_retryable(e), counter=counter)
            return

        recreated = await self._apply(
            counter,
            entity_type,
            row_id,
            lambda: self.client.create(collection, {'id': 0, **payload}),
            'reassign',
        )
        if not recreated:
            self.run.warn(
                f'{entity_type} {row_id} was removed from the source resource but '
                'could not be recreated for the receiving resource.'
            )

    async def _write_audit_notes(self) -> None:
        request = self.request
        today = self.context.now().date().isoformat()
        uses_link = '{entityLink}' in request.audit_note_template
        unlinked = set()
        for name, entity_type in (
            ('companies', 'company'),
            ('tickets', 'ticket'),
            ('tasks', 'task'),
            ('projects', 'project'),
        ):
            for item in self.items[name]:
                entity_id = as_int(item.get('id')) or 0
                if self.run.has_failure(entity_type, entity_id):
                    continue
                link = self.metadata.deep_link(entity_type, entity_id)
                if link is None and uses_link and entity_type not in unlinked:
                    unlinked.add(entity_type)
                    self.run.warn(
                        f'Deep links could not be generated for {entity_type} records; '
                        'their audit notes omit the link.'
                    )
                text = resolve_template(
                    request.audit_note_template,
                    {
                        'sourceResourceId': request.source_resource_id,
                        'destinationResourceId': request.destination_resource_id,
                        'sourceResourceName': self.names['source'],
                        'destinationResourceName': self.names['destination'],
                        'sourceId': request.source_resource_id,
                        'destinationId': request.destination_resource_id,
                        'date': today,
                        'entityType': entity_type,
                        'entityId': entity_id,
                        'entityLink': link or '',
                        'runId': self.run.run_id,
                    },
                )
                await self._add_audit_note(entity_type, entity_id, text)

    async def _add_audit_note(self, entity_type: str, entity_id: int, text: str) -> None:
        base = {'id': 0, 'title': AUDIT_NOTE_TITLE, 'description': text}
        if entity_type == 'company':
            endpoint, payload = 'CompanyNotes', {**base, 'companyID': entity_id}
        elif entity_type == 'ticket':
            endpoint = 'TicketNotes'
            payload = {**base, 'ticketID': entity_id, 'noteType': 1, 'publish': 1}
        elif entity_type == 'project':
            endpoint = 'ProjectNotes'
            payload = {**base, 'projectID': entity_id, 'noteType': 1, 'publish': 1}
        else:
            endpoint, payload = f'Tasks/{entity_id}/Notes', {**base, 'noteType': 1, 'publish': 1}

        try:
            note_id = await self.executor.call(
                lambda: self.client.create(endpoint, payload),
                f'{entity_type} {entity_id} audit note',
            )
        except Exception as e:
            unsupported = isinstance(e, PSANotFoundError) or (
                isinstance(e, PSAAPIError) and e.status_code == 405
            )
            if entity_type == 'task' and unsupported:
                self.run.warn(
                    f'Task notes endpoint not supported; task {entity_id} audit note skipped.'
                )
                return
            message = f'Failed to add {entity_type} audit note for {entity_id}: {e}'
            self.logger.warning(message)
            self.run.warn(message)
            return
        self.run.record_mutation(MutationKind.CREATE, f'{entity_type}Note', note_id, 'audit note')

    async def _check_remaining_tickets(self) -> None:
        if not self._ticket_filters:
            return
        count = await self.client.query_count('Tickets', self._ticket_filters)
        if count is not None and count > self.request.max_items_per_entity:
            self.run.warn(
                f'Ticket query count is {count}, which is above max_items_per_entity.'
            )
