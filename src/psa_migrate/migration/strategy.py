"""Migration strategy interfaces and implementations.

A strategy describes one entity kind to the generic saga in
:mod:`.orchestrator`: how to validate a move, what the destination payload
looks like, which sub-resources travel with it and how audit notes and
deactivation are written. The orchestrator owns ordering and compensation.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..api.client import PSAClient
from ..api.metadata import EntityMetadata
from ..models.request import (
    ConfigurationItemMoveRequest,
    ContactMoveRequest,
    DuplicatePolicy,
    MaskedFieldPolicy,
    MigrationRequest,
)
from ..models.run import Run
from .audit import AuditTrailWriter, build_migration_header, truncate_text
from .exceptions import (
    DuplicateTargetError,
    EntityNotFoundError,
    InactiveTargetError,
    MaskedFieldError,
    NoOpMoveError,
    OversizeItemError,
    PreflightError,
    ScopeMismatchError,
    VerificationError,
)
from .reference import ReferenceIntegrityHelper
from .report import PhaseTimer
from .retry import ThrottledRetryExecutor, base64_size

MASKED_VALUE = '*****'
ATTACHMENT_TYPE = 'FILE_ATTACHMENT'
NOTE_BODY_FIELDS = ('description', 'note', 'text', 'content')


class MigrationContext(BaseModel):
    """Collaborators shared by every run of an engine."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    client: PSAClient = Field(..., description='PSA transport')
    metadata: EntityMetadata = Field(..., description='Field metadata cache')
    note_truncate_length: int = Field(default=32000)

    sleep: Callable[[float], Awaitable[None]] = Field(default=asyncio.sleep)
    clock: Callable[[], float] = Field(default=time.monotonic)
    now: Callable[[], datetime] = Field(
        default=lambda: datetime.now(timezone.utc),
        description='Wall clock used in headers and audit dates',
    )


class MigrationSession:
    """Per-run helpers: the run itself, its executor, reference helper and timers."""

    def __init__(self, context: MigrationContext, run: Run, request: MigrationRequest):
        self.context = context
        self.run = run
        self.request = request
        self.executor = ThrottledRetryExecutor(
            request.retry_policy,
            request.throttle_policy,
            request.oversize_policy,
            sleep=context.sleep,
            clock=context.clock,
        )
        self.references = ReferenceIntegrityHelper(context.client, run)
        self.audit = AuditTrailWriter(run, self.executor)
        self.timer = PhaseTimer(run, clock=context.clock)

    @property
    def client(self) -> PSAClient:
        return self.context.client

    @property
    def metadata(self) -> EntityMetadata:
        return self.context.metadata


class PreflightResult(BaseModel):
    """What preflight learned; ``skip_reason`` turns the run into a no-op."""

    source: Dict[str, Any]
    source_scope_id: int
    destination_scope: Dict[str, Any] = Field(default_factory=dict)
    source_scope: Dict[str, Any] = Field(default_factory=dict)
    skip_reason: Optional[str] = None
    info: Dict[str, Any] = Field(default_factory=dict)


class SkipItem(Exception):
    """Raised by a copy step to skip one item with a reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def as_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number


def is_active(record: Dict[str, Any]) -> bool:
    return record.get('isActive') not in (False, 0)


def read_note_body(note: Dict[str, Any]) -> str:
    for key in NOTE_BODY_FIELDS:
        value = note.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ''


def sorted_by_id(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(items, key=lambda item: as_int(item.get('id')) or 0)


def eq(field: str, value: Any) -> Dict[str, Any]:
    return {'field': field, 'op': 'eq', 'value': value}


class MigrationStrategy(ABC):
    """Abstract base class for single-entity move strategies."""

    entity_kind: str = ''
    workflow: str = ''
    source_label: str = ''
    scope_label = 'Company'

    def __init__(self, context: MigrationContext, request: MigrationRequest):
        """Initialize migration strategy.

        Args:
            context: Shared collaborators
            request: Immutable move request
        """
        self.context = context
        self.request = request
        self.logger = logger.bind(strategy=self.__class__.__name__)

    @property
    @abstractmethod
    def source_id(self) -> int:
        """Identifier of the entity being moved."""

    @abstractmethod
    async def preflight(self, session: MigrationSession) -> PreflightResult:
        """Load and cross-check source and destination; no writes.

        Raises:
            PreflightError: When the move must not start
        """

    @abstractmethod
    async def build_plan(
        self, session: MigrationSession, preflight: PreflightResult
    ) -> Dict[str, Any]:
        """Produce the create payload and the sub-resources to copy; reads only."""

    @abstractmethod
    async def create_destination(
        self, session: MigrationSession, plan: Dict[str, Any]
    ) -> int:
        """Create the destination entity and return its id."""

    @abstractmethod
    async def verify_destination(
        self, session: MigrationSession, destination_id: int
    ) -> None:
        """Confirm the new record landed in the intended scope.

        Raises:
            VerificationError: On mismatch
        """

    @abstractmethod
    async def copy_sub_resources(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        plan: Dict[str, Any],
        destination_id: int,
    ) -> None:
        """Copy every enabled sub-resource class, item by item."""

    @abstractmethod
    def audit_variables(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
    ) -> Dict[str, Any]:
        """Placeholder values for audit note templates."""

    @abstractmethod
    async def write_source_audit_note(
        self, session: MigrationSession, preflight: PreflightResult, text: str
    ) -> int:
        pass

    @abstractmethod
    async def write_destination_audit_note(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
        text: str,
    ) -> int:
        pass

    @abstractmethod
    async def deactivate_source(
        self, session: MigrationSession, preflight: PreflightResult
    ) -> None:
        pass

    @abstractmethod
    async def deactivate_destination(
        self, session: MigrationSession, destination_id: int
    ) -> None:
        pass

    @abstractmethod
    async def write_partial_note(
        self, session: MigrationSession, destination_id: int, text: str
    ) -> int:
        pass

    def summarize(
        self, session: MigrationSession, destination_id: Optional[int]
    ) -> Dict[str, Any]:
        """Workflow-specific report entries."""
        return {}

    async def require(
        self, session: MigrationSession, endpoint: str, kind: str, entity_id: int, label: str
    ) -> Dict[str, Any]:
        record = await session.client.get_entity(endpoint)
        if record is None:
            raise EntityNotFoundError(f'{label} {entity_id} was not found', kind, entity_id)
        return record

    async def require_destination_company(
        self, session: MigrationSession, company_id: int
    ) -> Dict[str, Any]:
        company = await self.require(
            session, f'Companies/{company_id}', 'company', company_id, 'Destination company'
        )
        if not is_active(company):
            raise InactiveTargetError(
                f'Destination company {company_id} is inactive', 'company', company_id
            )
        return company

    async def require_location_in_scope(
        self, session: MigrationSession, location_id: int, company_id: int
    ) -> Dict[str, Any]:
        location = await self.require(
            session,
            f'CompanyLocations/{location_id}',
            'companyLocation',
            location_id,
            'Destination location',
        )
        if as_int(location.get('companyID')) != company_id:
            raise ScopeMismatchError(
                f'Destination location {location_id} does not belong to '
                f'destination company {company_id}',
                'companyLocation',
                location_id,
            )
        return location

    async def count_by(
        self, session: MigrationSession, collection: str, field: str, value: int
    ) -> Optional[int]:
        return await session.client.query_count(collection, [eq(field, value)])

    async def resolve_location_by_name(
        self,
        session: MigrationSession,
        source_location_id: Optional[int],
        destination_company_id: int,
    ) -> Tuple[Optional[int], Dict[str, Any]]:
        """Find the destination location named like the source location.

        First match by id wins; zero or several matches are warnings.
        """
        resolved: Dict[str, Any] = {
            'sourceLocationId': source_location_id,
            'sourceLocationName': None,
            'destinationLocationId': None,
            'matches': 0,
        }
        if not source_location_id:
            return None, resolved

        location = await session.client.get_entity(f'CompanyLocations/{source_location_id}')
        name = (location or {}).get('name')
        if not name:
            session.run.warn(
                f'Source location {source_location_id} could not be read; '
                'destination location left empty.'
            )
            return None, resolved
        resolved['sourceLocationName'] = name

        matches = sorted_by_id(
            await session.client.query_all(
                'CompanyLocations',
                [eq('companyID', destination_company_id), eq('name', name)],
            )
        )
        resolved['matches'] = len(matches)
        if not matches:
            session.run.warn(
                f'No location named "{name}" exists at destination company '
                f'{destination_company_id}; destination location left empty.'
            )
            return None, resolved

        chosen = as_int(matches[0].get('id'))
        if len(matches) > 1:
            session.run.warn(
                f'{len(matches)} locations named "{name}" exist at destination company '
                f'{destination_company_id}; using location {chosen}.'
            )
        resolved['destinationLocationId'] = chosen
        return chosen, resolved

    def copy_udfs(self, session: MigrationSession, source: Dict[str, Any]) -> List[Dict[str, Any]]:
        """User-defined fields safe to echo, honouring the masked-field policy.

        Raises:
            MaskedFieldError: Under the fail policy
        """
        copied: List[Dict[str, Any]] = []
        masked: List[str] = []
        for udf in source.get('userDefinedFields') or []:
            if not isinstance(udf, dict):
                continue
            name = udf.get('name') or f'udf_{udf.get("id", "unknown")}'
            if udf.get('value') == MASKED_VALUE:
                if self.request.masked_field_policy == MaskedFieldPolicy.FAIL:
                    raise MaskedFieldError(
                        f"Masked UDF '{name}' detected and the masked field policy is fail",
                        entity_kind=self.entity_kind,
                        entity_id=self.source_id,
                        phase='plan',
                    )
                masked.append(name)
                continue
            copied.append(dict(udf))
        if masked:
            session.run.skipped.setdefault('udfs', []).extend(masked)
            session.run.warn(f'Masked UDFs were omitted: {", ".join(masked)}')
        return copied

    async def writable_payload(
        self,
        session: MigrationSession,
        kind: str,
        source: Dict[str, Any],
        excluded: Tuple[str, ...],
    ) -> Dict[str, Any]:
        """Start a create payload from the writable fields of ``source``."""
        writable = await session.metadata.get_writable_field_names(kind)
        payload: Dict[str, Any] = {'id': 0}
        for name in sorted(writable):
            if name in excluded or name == 'id':
                continue
            value = source.get(name)
            if value is not None:
                payload[name] = value
        return payload

    def migrated_body(self, preflight: PreflightResult, body: str) -> str:
        header = build_migration_header(
            self.source_label,
            self.source_id,
            self.scope_label,
            preflight.source_scope_id,
            self.context.now(),
        )
        text = f'{header}\n\n{body}' if body else header
        return truncate_text(text, self.context.note_truncate_length)

    async def copy_each(
        self,
        session: MigrationSession,
        sub_resource_class: str,
        items: List[Dict[str, Any]],
        copy_one: Callable[[Dict[str, Any]], Awaitable[int]],
        label: str,
    ) -> None:
        """Copy ``items`` one at a time; one failure never stops its siblings.

        Oversize and masked-field failures are policy decisions and end the run.
        """
        run = session.run
        for item in items:
            source_item_id = item.get('id')
            unit = run.new_unit(sub_resource_class, source_item_id)
            try:
                new_id = await copy_one(item)
            except SkipItem as skip:
                run.mark_skipped(unit, skip.reason)
                continue
            except (OversizeItemError, MaskedFieldError) as e:
                run.mark_failed(unit, str(e))
                raise
            except Exception as e:
                message = f'Failed to copy {label} {source_item_id}: {e}'
                self.logger.warning(message)
                run.mark_failed(unit, message)
                continue
            run.mark_copied(unit, new_id)

    async def copy_attachment(
        self,
        session: MigrationSession,
        source_endpoint: str,
        destination_endpoint: str,
        attachment_id: int,
        label: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Download one attachment and upload it under the throttle.

        Raises:
            SkipItem: No data, or oversize under the skip policy
        """
        executor = session.executor
        detail = await executor.call(
            lambda: session.client.get_items(f'{source_endpoint}/{attachment_id}'),
            f'download {label} {attachment_id}',
        )
        attachment = detail[0] if detail else None
        data = (attachment or {}).get('data')
        if not isinstance(data, str) or not data.strip():
            raise SkipItem(f'{label.capitalize()} {attachment_id} has no data and was skipped')

        full_path = str(attachment.get('fullPath') or f'attachment-{attachment_id}')
        size = base64_size(data)
        descriptor = f'{attachment_id} ({full_path})'
        if not executor.admit(
            size, descriptor, entity_kind=self.entity_kind, entity_id=self.source_id
        ):
            raise SkipItem(f'Skipped oversize {label} {descriptor}')

        payload = {
            'id': 0,
            'attachmentType': ATTACHMENT_TYPE,
            'data': data,
            'fullPath': full_path,
            'title': str(attachment.get('title') or full_path),
            'publish': as_int(attachment.get('publish')) or 1,
        }
        if extra:
            payload.update(extra)
        return await executor.upload(
            size,
            lambda: session.client.create(destination_endpoint, payload),
            f'upload {label} {attachment_id}',
        )


class ContactMoveStrategy(MigrationStrategy):
    """Move a contact to another company."""

    entity_kind = 'contact'
    workflow = 'contact-move'
    source_label = 'Contact'

    EXCLUDED_FIELDS = ('id', 'createDate', 'lastActivityDate', 'lastModifiedDate')
    NOTE_EXCLUDED_FIELDS = (
        'id',
        'createDateTime',
        'lastModifiedDateTime',
        'creatorResourceID',
        'impersonatorCreatorResourceID',
    )

    DEFAULT_SOURCE_AUDIT_NOTE = (
        'Contact {contactName} (ID: {sourceContactId}) was copied to Company ID: '
        '{destinationCompanyId} as new Contact ID: {newContactId} on {date}. '
        'This contact has been deactivated.'
    )
    DEFAULT_DESTINATION_AUDIT_NOTE = (
        'Contact {contactName} (ID: {newContactId}) was copied from Company ID: '
        '{sourceCompanyId} (original Contact ID: {sourceContactId}) on {date}.'
    )

    request: ContactMoveRequest

    def __init__(self, context: MigrationContext, request: ContactMoveRequest):
        super().__init__(context, request)
        self._notes: List[Dict[str, Any]] = []

    @property
    def source_id(self) -> int:
        return self.request.source_contact_id

    async def preflight(self, session: MigrationSession) -> PreflightResult:
        request = self.request
        source = await self.require(
            session, f'Contacts/{self.source_id}', 'contact', self.source_id, 'Source contact'
        )
        if not is_active(source):
            raise PreflightError(
                f'Source contact {self.source_id} is already inactive', 'contact', self.source_id
            )

        source_company_id = as_int(source.get('companyID'))
        if not source_company_id:
            raise PreflightError(
                f'Source contact {self.source_id} has no companyID', 'contact', self.source_id
            )
        if source_company_id == request.destination_company_id:
            raise NoOpMoveError(
                'Source and destination company are the same. No move needed.',
                'contact',
                self.source_id,
            )

        destination = await self.require_destination_company(
            session, request.destination_company_id
        )
        source_company = await session.client.get_entity(f'Companies/{source_company_id}') or {}

        if request.destination_location_id:
            await self.require_location_in_scope(
                session, request.destination_location_id, request.destination_company_id
            )

        result = PreflightResult(
            source=source,
            source_scope_id=source_company_id,
            source_scope=source_company,
            destination_scope=destination,
        )

        email = source.get('emailAddress')
        if email:
            existing = await session.client.query_all(
                'Contacts',
                [eq('emailAddress', email), eq('companyID', request.destination_company_id)],
            )
            if existing:
                existing_id = as_int(existing[0].get('id'))
                message = (
                    f'A contact with email "{email}" already exists at destination company '
                    f'{request.destination_company_id} (Contact ID: {existing_id}).'
                )
                if request.duplicate_policy == DuplicatePolicy.FAIL:
                    raise DuplicateTargetError(
                        f'{message} Aborting to prevent duplicates.',
                        'contact',
                        self.source_id,
                        existing_id=existing_id,
                    )
                result.skip_reason = f'{message} Move skipped.'
                result.info['existingContactId'] = existing_id

        result.info.update(
            {
                'sourceCompanyId': source_company_id,
                'sourceIsPrimaryContact': source.get('isPrimaryContact') in (True, 1),
                'inScopeCounts': {
                    'contactGroups': await self.count_by(
                        session, 'ContactGroupContacts', 'contactID', self.source_id
                    ),
                    'companyNotes': await self.count_by(
                        session, 'CompanyNotes', 'contactID', self.source_id
                    ),
                },
                'leftBehindCounts': {
                    'tickets': await self.count_by(session, 'Tickets', 'contactID', self.source_id),
                    'opportunities': await self.count_by(
                        session, 'Opportunities', 'contactID', self.source_id
                    ),
                    'configurationItems': await self.count_by(
                        session, 'ConfigurationItems', 'contactID', self.source_id
                    ),
                },
            }
        )
        return result

    async def build_plan(
        self, session: MigrationSession, preflight: PreflightResult
    ) -> Dict[str, Any]:
        request = self.request
        source = preflight.source
        payload = await self.writable_payload(session, 'contact', source, self.EXCLUDED_FIELDS)
        payload['companyID'] = request.destination_company_id

        resolved: Dict[str, Any] = {}
        if request.destination_location_id:
            payload['companyLocationID'] = request.destination_location_id
        elif request.auto_map_location and source.get('companyLocationID'):
            location_id, resolved['companyLocationID'] = await self.resolve_location_by_name(
                session, as_int(source.get('companyLocationID')), request.destination_company_id
            )
            if location_id:
                payload['companyLocationID'] = location_id
            else:
                payload.pop('companyLocationID', None)
        else:
            payload.pop('companyLocationID', None)

        udfs = self.copy_udfs(session, source)
        if udfs:
            payload['userDefinedFields'] = udfs
        else:
            payload.pop('userDefinedFields', None)

        groups: List[Dict[str, Any]] = []
        if request.copy_contact_groups:
            memberships = await session.client.query_all(
                'ContactGroupContacts', [eq('contactID', self.source_id)]
            )
            groups = [
                {'id': m.get('id'), 'contactGroupID': m.get('contactGroupID')}
                for m in sorted_by_id(memberships)
            ]

        notes: List[Dict[str, Any]] = []
        note_attachments: List[Dict[str, Any]] = []
        if request.copy_company_notes:
            self._notes = sorted_by_id(
                await session.client.query_all('CompanyNotes', [eq('contactID', self.source_id)])
            )
            notes = [{'id': n.get('id'), 'title': n.get('title')} for n in self._notes]
            if request.copy_note_attachments:
                for note in self._notes:
                    attachments = await session.client.get_items(
                        f'Companies/{preflight.source_scope_id}/Notes/{note.get("id")}/Attachments'
                    )
                    note_attachments.extend(
                        {
                            'id': a.get('id'),
                            'noteId': note.get('id'),
                            'title': a.get('title'),
                            'fullPath': a.get('fullPath'),
                        }
                        for a in sorted_by_id(attachments)
                    )

        return {
            'entityKind': self.entity_kind,
            'sourceId': self.source_id,
            'sourceScopeId': preflight.source_scope_id,
            'destinationScopeId': request.destination_company_id,
            'payload': payload,
            'resolved': resolved,
            'subResources': {
                'contactGroups': groups,
                'companyNotes': notes,
                'noteAttachments': note_attachments,
            },
        }

    async def create_destination(
        self, session: MigrationSession, plan: Dict[str, Any]
    ) -> int:
        endpoint = f'Companies/{self.request.destination_company_id}/Contacts'

        def write(payload: Dict[str, Any]) -> Awaitable[int]:
            return session.executor.call(
                lambda: session.client.create(endpoint, payload),
                'create contact',
                entity_kind='contact',
                entity_id=self.source_id,
                phase='create',
            )

        return await session.references.write_with_fallback(plan['payload'], write, 'contact')

    async def verify_destination(
        self, session: MigrationSession, destination_id: int
    ) -> None:
        created = await session.client.get_entity(f'Contacts/{destination_id}')
        if created is None:
            raise VerificationError(
                f'Destination contact {destination_id} was not found after create',
                'contact',
                destination_id,
                'create',
            )
        company_id = as_int(created.get('companyID'))
        if company_id != self.request.destination_company_id:
            raise VerificationError(
                f'Post-create verification failed: destination contact companyID is {company_id}',
                'contact',
                destination_id,
                'create',
            )

    async def copy_sub_resources(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        plan: Dict[str, Any],
        destination_id: int,
    ) -> None:
        request = self.request
        sub = plan['subResources']

        async def copy_group(membership: Dict[str, Any]) -> int:
            return await session.executor.call(
                lambda: session.client.create(
                    'ContactGroupContacts',
                    {
                        'id': 0,
                        'contactID': destination_id,
                        'contactGroupID': membership['contactGroupID'],
                    },
                ),
                f'copy contact group {membership["contactGroupID"]}',
            )

        with session.timer.phase('copyContactGroups'):
            if request.copy_contact_groups:
                await self.copy_each(
                    session, 'contactGroups', sub['contactGroups'], copy_group, 'contact group membership'
                )

        note_map: Dict[str, int] = {}

        async def copy_note(note: Dict[str, Any]) -> int:
            payload = await self.writable_payload(
                session, 'companyNote', note, self.NOTE_EXCLUDED_FIELDS
            )
            payload['companyID'] = request.destination_company_id
            payload['contactID'] = destination_id
            payload['description'] = self.migrated_body(preflight, read_note_body(note))
            payload.setdefault('title', note.get('title') or 'Migrated note')
            await session.metadata.apply_required_field_defaults(
                'companyNote', payload, session.run.warnings
            )
            new_id = await session.references.call(
                lambda: session.executor.call(
                    lambda: session.client.create(
                        f'Companies/{request.destination_company_id}/Notes', payload
                    ),
                    f'copy company note {note.get("id")}',
                )
            )
            note_map[str(note.get('id'))] = new_id
            return new_id

        with session.timer.phase('copyNotes'):
            if request.copy_company_notes:
                await self.copy_each(session, 'companyNotes', self._notes, copy_note, 'company note')

        async def copy_note_attachment(attachment: Dict[str, Any]) -> int:
            new_note_id = note_map.get(str(attachment['noteId']))
            if new_note_id is None:
                raise SkipItem(
                    f'Note attachment {attachment["id"]} skipped because note '
                    f'{attachment["noteId"]} was not copied'
                )
            return await self.copy_attachment(
                session,
                f'Companies/{preflight.source_scope_id}/Notes/{attachment["noteId"]}/Attachments',
                f'Companies/{request.destination_company_id}/Notes/{new_note_id}/Attachments',
                attachment['id'],
                'note attachment',
                extra={'parentID': new_note_id},
            )

        with session.timer.phase('copyNoteAttachments'):
            if request.copy_company_notes and request.copy_note_attachments:
                await self.copy_each(
                    session, 'noteAttachments', sub['noteAttachments'], copy_note_attachment, 'note attachment'
                )

    def audit_variables(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
    ) -> Dict[str, Any]:
        source = preflight.source
        name = f'{source.get("firstName") or ""} {source.get("lastName") or ""}'.strip()
        source_link = session.metadata.deep_link('contact', self.source_id)
        destination_link = session.metadata.deep_link('contact', destination_id)
        if not source_link or not destination_link:
            session.run.warn(
                'Deep links could not be generated; the zone URL does not match '
                'the expected webservices{N} pattern.'
            )
        return {
            'contactName': name or 'Unknown',
            'sourceContactId': self.source_id,
            'newContactId': destination_id,
            'sourceCompanyId': preflight.source_scope_id,
            'sourceCompanyName': preflight.source_scope.get('companyName') or '',
            'destinationCompanyId': self.request.destination_company_id,
            'destinationCompanyName': preflight.destination_scope.get('companyName') or '',
            'sourceId': self.source_id,
            'destinationId': destination_id,
            'sourceContactLink': source_link or '',
            'newContactLink': destination_link or '',
            'sourceLink': source_link or '',
            'destinationLink': destination_link or '',
            'runId': session.run.run_id,
            'date': self.context.now().date().isoformat(),
        }

    async def _company_note(
        self, session: MigrationSession, company_id: int, contact_id: int, title: str, text: str
    ) -> int:
        payload = {
            'id': 0,
            'companyID': company_id,
            'contactID': contact_id,
            'title': title,
            'description': truncate_text(text, self.context.note_truncate_length),
            'actionType': 1,
            'publish': 1,
        }
        await session.metadata.apply_required_field_defaults(
            'companyNote', payload, session.run.warnings
        )
        return await session.client.create(f'Companies/{company_id}/Notes', payload)

    async def write_source_audit_note(
        self, session: MigrationSession, preflight: PreflightResult, text: str
    ) -> int:
        return await self._company_note(
            session, preflight.source_scope_id, self.source_id, 'Contact Moved', text
        )

    async def write_destination_audit_note(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
        text: str,
    ) -> int:
        return await self._company_note(
            session, self.request.destination_company_id, destination_id, 'Contact Moved', text
        )

    async def deactivate_source(
        self, session: MigrationSession, preflight: PreflightResult
    ) -> None:
        await session.client.update(
            f'Companies/{preflight.source_scope_id}/Contacts',
            {'id': self.source_id, 'isActive': 0},
        )
        if preflight.info.get('sourceIsPrimaryContact'):
            session.run.warn(
                f'Source contact {self.source_id} is the primary contact for company '
                f'{preflight.source_scope_id}. It has been deactivated but you may need '
                'to assign a new primary contact.'
            )

    async def deactivate_destination(
        self, session: MigrationSession, destination_id: int
    ) -> None:
        await session.client.update(
            f'Companies/{self.request.destination_company_id}/Contacts',
            {'id': destination_id, 'isActive': 0},
        )

    async def write_partial_note(
        self, session: MigrationSession, destination_id: int, text: str
    ) -> int:
        return await self._company_note(
            session,
            self.request.destination_company_id,
            destination_id,
            'Partial migration',
            text,
        )

    def summarize(
        self, session: MigrationSession, destination_id: Optional[int]
    ) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            'sourceContactId': self.source_id,
            'destinationCompanyId': self.request.destination_company_id,
        }
        if destination_id is not None:
            summary['newContactId'] = destination_id
            summary['contactIdMapping'] = {str(self.source_id): destination_id}
        return summary


class ConfigurationItemMoveStrategy(MigrationStrategy):
    """Move a configuration item, its attachments and notes to another company."""

    entity_kind = 'configurationItem'
    workflow = 'ci-move'
    source_label = 'CI'

    EXCLUDED_FIELDS = ('id', 'userDefinedFields', 'parentConfigurationItemID')

    DEFAULT_SOURCE_AUDIT_NOTE = (
        'This configuration item was moved to {destinationCompanyName} '
        '({destinationCompanyId}) on {date}.\n\nNew CI: {newConfigurationItemId}\n'
        'Link: {newConfigurationItemLink}\n\nRun ID: {runId}'
    )
    DEFAULT_DESTINATION_AUDIT_NOTE = (
        'This configuration item was copied from {sourceCompanyName} '
        '({sourceCompanyId}) on {date}.\n\nOriginal CI: {sourceConfigurationItemId}\n'
        'Link: {sourceConfigurationItemLink}\n\nRun ID: {runId}'
    )

    request: ConfigurationItemMoveRequest

    def __init__(self, context: MigrationContext, request: ConfigurationItemMoveRequest):
        super().__init__(context, request)
        self._notes: List[Dict[str, Any]] = []

    @property
    def source_id(self) -> int:
        return self.request.source_configuration_item_id

    async def preflight(self, session: MigrationSession) -> PreflightResult:
        request = self.request
        run = session.run
        source = await self.require(
            session,
            f'ConfigurationItems/{self.source_id}',
            'configurationItem',
            self.source_id,
            'Source configuration item',
        )
        source_company_id = as_int(source.get('companyID'))
        if source_company_id is None or source_company_id < 0:
            raise PreflightError(
                f'Source configuration item has an invalid companyID ({source.get("companyID")!r})',
                'configurationItem',
                self.source_id,
            )
        if source_company_id == request.destination_company_id:
            raise NoOpMoveError(
                'Source and destination company are the same. No move needed.',
                'configurationItem',
                self.source_id,
            )

        destination = await self.require_destination_company(
            session, request.destination_company_id
        )
        source_company = await session.client.get_entity(f'Companies/{source_company_id}') or {}

        if request.destination_location_id:
            await self.require_location_in_scope(
                session, request.destination_location_id, request.destination_company_id
            )

        if request.destination_contact_id:
            contact = await self.require(
                session,
                f'Contacts/{request.destination_contact_id}',
                'contact',
                request.destination_contact_id,
                'Destination contact',
            )
            linked = {as_int(contact.get('companyID')), as_int(contact.get('parentCompanyID'))}
            if request.destination_company_id not in linked:
                raise ScopeMismatchError(
                    f'Destination contact {request.destination_contact_id} is not linked to '
                    f'destination company {request.destination_company_id}',
                    'contact',
                    request.destination_contact_id,
                )
            if not is_active(contact):
                run.warn(
                    f'Destination contact {request.destination_contact_id} is inactive; '
                    'it will be temporarily activated during CI creation.'
                )
        else:
            run.warn(
                'destination_contact_id not provided; destination contact linkage will be cleared.'
            )

        if not is_active(source):
            run.warn(f'Source configuration item {self.source_id} is already inactive.')

        count = lambda collection: self.count_by(  # noqa: E731
            session, collection, 'configurationItemID', self.source_id
        )
        info = {
            'sourceCompanyId': source_company_id,
            'sourceReferenceTitle': source.get('referenceTitle'),
            'sourceSerialNumber': source.get('serialNumber'),
            'sourceIsActive': is_active(source),
            'inScopeCounts': {
                'notes': await count('ConfigurationItemNotes'),
                'attachments': await count('ConfigurationItemAttachments'),
            },
            'leftBehindCounts': {
                'ticketAdditionalConfigurationItems': await count(
                    'TicketAdditionalConfigurationItems'
                ),
                'configurationItemRelatedItems': await count('ConfigurationItemRelatedItems'),
                'configurationItemBillingProductAssociations': await count(
                    'ConfigurationItemBillingProductAssociations'
                ),
                'configurationItemSslSubjectAlternativeNames': await count(
                    'ConfigurationItemSslSubjectAlternativeNames'
                ),
            },
        }
        return PreflightResult(
            source=source,
            source_scope_id=source_company_id,
            source_scope=source_company,
            destination_scope=destination,
            info=info,
        )

    async def build_plan(
        self, session: MigrationSession, preflight: PreflightResult
    ) -> Dict[str, Any]:
        request = self.request
        source = preflight.source
        payload = await self.writable_payload(
            session, 'configurationItem', source, self.EXCLUDED_FIELDS
        )

        resolved: Dict[str, Any] = {}
        location_id = request.destination_location_id
        if location_id is None and request.auto_map_location:
            location_id, resolved['companyLocationID'] = await self.resolve_location_by_name(
                session, as_int(source.get('companyLocationID')), request.destination_company_id
            )

        payload['companyID'] = request.destination_company_id
        payload['companyLocationID'] = location_id
        payload['contactID'] = request.destination_contact_id
        payload['isActive'] = 1

        if request.copy_udfs:
            udfs = self.copy_udfs(session, source)
            if udfs:
                payload['userDefinedFields'] = udfs

        attachments: List[Dict[str, Any]] = []
        if request.copy_attachments:
            items = await session.client.get_items(
                f'ConfigurationItems/{self.source_id}/Attachments'
            )
            attachments = [
                {'id': a.get('id'), 'title': a.get('title'), 'fullPath': a.get('fullPath')}
                for a in sorted_by_id(items)
                if (as_int(a.get('id')) or 0) > 0
            ]

        notes: List[Dict[str, Any]] = []
        note_attachments: List[Dict[str, Any]] = []
        if request.copy_notes:
            self._notes = [
                n
                for n in sorted_by_id(
                    await session.client.query_all(
                        'ConfigurationItemNotes', [eq('configurationItemID', self.source_id)]
                    )
                )
                if (as_int(n.get('id')) or 0) > 0
            ]
            notes = [{'id': n.get('id'), 'title': n.get('title')} for n in self._notes]
            if request.copy_note_attachments:
                for note in self._notes:
                    items = await session.client.get_items(
                        f'ConfigurationItemNotes/{note.get("id")}/Attachments'
                    )
                    note_attachments.extend(
                        {
                            'id': a.get('id'),
                            'noteId': note.get('id'),
                            'title': a.get('title'),
                            'fullPath': a.get('fullPath'),
                        }
                        for a in sorted_by_id(items)
                        if (as_int(a.get('id')) or 0) > 0
                    )

        return {
            'entityKind': self.entity_kind,
            'sourceId': self.source_id,
            'sourceScopeId': preflight.source_scope_id,
            'destinationScopeId': request.destination_company_id,
            'payload': payload,
            'resolved': resolved,
            'subResources': {
                'attachments': attachments,
                'notes': notes,
                'noteAttachments': note_attachments,
            },
        }

    async def create_destination(
        self, session: MigrationSession, plan: Dict[str, Any]
    ) -> int:
        def write(payload: Dict[str, Any]) -> Awaitable[int]:
            return session.executor.call(
                lambda: session.client.create('ConfigurationItems', payload),
                'create configuration item',
                entity_kind='configurationItem',
                entity_id=self.source_id,
                phase='create',
            )

        return await session.references.write_with_fallback(
            plan['payload'], write, 'configuration item'
        )

    async def verify_destination(
        self, session: MigrationSession, destination_id: int
    ) -> None:
        created = await session.client.get_entity(f'ConfigurationItems/{destination_id}')
        if created is None:
            raise VerificationError(
                f'Destination configuration item {destination_id} was not found after create',
                'configurationItem',
                destination_id,
                'create',
            )
        company_id = as_int(created.get('companyID'))
        if company_id != self.request.destination_company_id:
            raise VerificationError(
                f'Post-create verification failed: destination CI companyID is {company_id}',
                'configurationItem',
                destination_id,
                'create',
            )

    async def copy_sub_resources(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        plan: Dict[str, Any],
        destination_id: int,
    ) -> None:
        request = self.request
        sub = plan['subResources']

        async def copy_ci_attachment(attachment: Dict[str, Any]) -> int:
            return await self.copy_attachment(
                session,
                f'ConfigurationItems/{self.source_id}/Attachments',
                f'ConfigurationItems/{destination_id}/Attachments',
                attachment['id'],
                'attachment',
            )

        with session.timer.phase('copyAttachments'):
            if request.copy_attachments:
                await self.copy_each(
                    session, 'attachments', sub['attachments'], copy_ci_attachment, 'attachment'
                )

        note_map: Dict[str, int] = {}

        async def copy_note(note: Dict[str, Any]) -> int:
            payload = await self.writable_payload(
                session, 'configurationItemNote', note, ('id',)
            )
            payload['configurationItemID'] = destination_id
            payload['description'] = self.migrated_body(preflight, read_note_body(note))
            if not payload.get('title'):
                payload['title'] = str(note.get('title') or note.get('name') or 'Migrated note')
            await session.metadata.apply_required_field_defaults(
                'configurationItemNote', payload, session.run.warnings
            )
            new_id = await session.references.call(
                lambda: session.executor.call(
                    lambda: session.client.create(
                        f'ConfigurationItems/{destination_id}/Notes', payload
                    ),
                    f'copy note {note.get("id")}',
                )
            )
            note_map[str(note.get('id'))] = new_id
            return new_id

        with session.timer.phase('copyNotes'):
            if request.copy_notes:
                await self.copy_each(session, 'notes', self._notes, copy_note, 'note')

        async def copy_note_attachment(attachment: Dict[str, Any]) -> int:
            new_note_id = note_map.get(str(attachment['noteId']))
            if new_note_id is None:
                raise SkipItem(
                    f'Note attachment {attachment["id"]} skipped because note '
                    f'{attachment["noteId"]} was not copied'
                )
            return await self.copy_attachment(
                session,
                f'ConfigurationItemNotes/{attachment["noteId"]}/Attachments',
                f'ConfigurationItemNotes/{new_note_id}/Attachments',
                attachment['id'],
                'note attachment',
            )

        with session.timer.phase('copyNoteAttachments'):
            if request.copy_notes and request.copy_note_attachments:
                await self.copy_each(
                    session, 'noteAttachments', sub['noteAttachments'], copy_note_attachment, 'note attachment'
                )

    def audit_variables(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
    ) -> Dict[str, Any]:
        source_link = session.metadata.deep_link('configurationItem', self.source_id)
        destination_link = session.metadata.deep_link('configurationItem', destination_id)
        if not source_link or not destination_link:
            session.run.warn(
                'Deep links could not be generated; the zone URL does not match '
                'the expected webservices{N} pattern.'
            )
        return {
            'sourceConfigurationItemId': self.source_id,
            'newConfigurationItemId': destination_id,
            'sourceCompanyId': preflight.source_scope_id,
            'sourceCompanyName': preflight.source_scope.get('companyName') or '',
            'destinationCompanyId': self.request.destination_company_id,
            'destinationCompanyName': preflight.destination_scope.get('companyName') or '',
            'sourceConfigurationItemLink': source_link or '',
            'newConfigurationItemLink': destination_link or '',
            'sourceId': self.source_id,
            'destinationId': destination_id,
            'sourceLink': source_link or '',
            'destinationLink': destination_link or '',
            'runId': session.run.run_id,
            'date': self.context.now().date().isoformat(),
        }

    async def _ci_note(
        self, session: MigrationSession, ci_id: int, title: str, text: str
    ) -> int:
        payload = {
            'id': 0,
            'title': title,
            'description': truncate_text(text, self.context.note_truncate_length),
            'actionType': 1,
            'publish': 1,
            'configurationItemID': ci_id,
        }
        await session.metadata.apply_required_field_defaults(
            'configurationItemNote', payload, session.run.warnings
        )
        return await session.client.create(f'ConfigurationItems/{ci_id}/Notes', payload)

    async def write_source_audit_note(
        self, session: MigrationSession, preflight: PreflightResult, text: str
    ) -> int:
        return await self._ci_note(
            session,
            self.source_id,
            f'CI copied to Company {self.request.destination_company_id}',
            text,
        )

    async def write_destination_audit_note(
        self,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
        text: str,
    ) -> int:
        return await self._ci_note(
            session,
            destination_id,
            f'CI copied from Company {preflight.source_scope_id}',
            text,
        )

    async def deactivate_source(
        self, session: MigrationSession, preflight: PreflightResult
    ) -> None:
        await session.client.update(
            'ConfigurationItems', {'id': self.source_id, 'isActive': 0}
        )

    async def deactivate_destination(
        self, session: MigrationSession, destination_id: int
    ) -> None:
        await session.client.update(
            'ConfigurationItems', {'id': destination_id, 'isActive': 0}
        )

    async def write_partial_note(
        self, session: MigrationSession, destination_id: int, text: str
    ) -> int:
        return await self._ci_note(session, destination_id, 'Partial migration', text)

    def summarize(
        self, session: MigrationSession, destination_id: Optional[int]
    ) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            'sourceConfigurationItemId': self.source_id,
            'destinationCompanyId': self.request.destination_company_id,
        }
        if destination_id is not None:
            summary['newConfigurationItemId'] = destination_id
            summary['configurationItemIdMapping'] = {str(self.source_id): destination_id}
        return summary
