"""Recovery from writes rejected for referencing inactive records.

The PSA refuses a create or update whose reference fields point at an
inactive contact or resource. The only signal is the error text, so text
parsing is confined to a classifier; the helper works on its verdicts.
"""

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from loguru import logger
from pydantic import BaseModel

from ..api.client import PSAClient
from ..models.run import MutationKind, Run

T = TypeVar('T')

MAX_FIELD_STRIPS = 5

INACTIVE_REF_PATTERN = re.compile(
    r'(\w+ID)\s*:\s*Value\s+(\d+)\s+does not exist or is invalid', re.IGNORECASE
)
BAD_REF_FIELD_PATTERN = re.compile(
    r'(?:Reference value on field:\s*(\w+)'
    r'|Value does not reference an existing entity for\s+(\w+))',
    re.IGNORECASE,
)

CONTACT_REF_FIELDS = {'contactid'}
RESOURCE_REF_FIELDS = {
    'resourceid',
    'createdbypersonid',
    'lastupdatedbypersonid',
    'assignedresourceid',
    'lastactivitybyresourceid',
}


class ReferenceKind(str, Enum):
    CONTACT = 'Contact'
    RESOURCE = 'Resource'


class InactiveReference(BaseModel):
    """A reference field the API rejected, with the record it points at."""

    field: str
    entity_id: int
    kind: ReferenceKind


class ReferenceErrorClassifier(ABC):
    """Turns API error text into reference verdicts."""

    @abstractmethod
    def classify(self, error: BaseException) -> Optional[InactiveReference]:
        """Return the inactive reference named by ``error``, if recognised."""

    @abstractmethod
    def offending_field(self, error: BaseException) -> Optional[str]:
        """Return a field named as a bad reference without an id."""


class PSAReferenceErrorClassifier(ReferenceErrorClassifier):
    """Classifier for the PSA's English error messages."""

    def classify(self, error: BaseException) -> Optional[InactiveReference]:
        match = INACTIVE_REF_PATTERN.search(str(error))
        if not match:
            return None
        field, entity_id = match.group(1), int(match.group(2))
        if entity_id <= 0:
            return None

        lowered = field.lower()
        if lowered in CONTACT_REF_FIELDS or lowered.endswith('contactid'):
            return InactiveReference(field=field, entity_id=entity_id, kind=ReferenceKind.CONTACT)
        if lowered in RESOURCE_REF_FIELDS or lowered.endswith('resourceid'):
            return InactiveReference(field=field, entity_id=entity_id, kind=ReferenceKind.RESOURCE)

        logger.warning(
            f'Field "{field}" (ID {entity_id}) is not a known contact or resource '
            'reference; not retrying'
        )
        return None

    def offending_field(self, error: BaseException) -> Optional[str]:
        match = BAD_REF_FIELD_PATTERN.search(str(error))
        if not match:
            return None
        return match.group(1) or match.group(2)


def _is_active(record: Dict[str, Any]) -> bool:
    return record.get('isActive') in (True, 1)


class ReferenceIntegrityHelper:
    """Temporarily reactivates referenced records, or strips the reference."""

    def __init__(
        self,
        client: PSAClient,
        run: Run,
        classifier: Optional[ReferenceErrorClassifier] = None,
    ):
        self.client = client
        self.run = run
        self.classifier = classifier or PSAReferenceErrorClassifier()
        self.logger = logger.bind(component='ReferenceIntegrityHelper')

    async def _load(self, ref: InactiveReference) -> Optional[Dict[str, Any]]:
        collection = 'Contacts' if ref.kind == ReferenceKind.CONTACT else 'Resources'
        return await self.client.get_entity(f'{collection}/{ref.entity_id}')

    @staticmethod
    def _patch_endpoint(ref: InactiveReference, record: Dict[str, Any]) -> Optional[str]:
        if ref.kind == ReferenceKind.CONTACT:
            company_id = int(record.get('companyID') or 0)
            # contacts are patched through their company collection
            return f'Companies/{company_id}/Contacts' if company_id else None
        return 'Resources'

    @staticmethod
    def _flag(ref: InactiveReference, active: bool) -> Any:
        if ref.kind == ReferenceKind.RESOURCE:
            return active
        return 1 if active else 0

    async def with_temporary_activation(
        self,
        ref: InactiveReference,
        operation: Callable[[], Awaitable[T]],
        original_error: BaseException,
    ) -> T:
        """Activate ``ref``, run ``operation`` once, restore the record.

        The restore always runs; if it fails, the run gets a warning asking
        for manual deactivation.

        Raises:
            original_error: When the record is missing, already active or
                cannot be patched, since activation cannot change the outcome
        """
        record = await self._load(ref)
        if record is None or _is_active(record):
            raise original_error

        endpoint = self._patch_endpoint(ref, record)
        if endpoint is None:
            raise original_error
        self.logger.warning(
            f'{ref.field} references inactive {ref.kind.value} {ref.entity_id}; '
            'activating temporarily'
        )
        await self.client.update(
            endpoint, {'id': ref.entity_id, 'isActive': self._flag(ref, True)}
        )
        self.run.record_mutation(
            MutationKind.UPDATE, ref.kind.value, ref.entity_id, 'temporary activation'
        )

        try:
            return await operation()
        finally:
            try:
                await self.client.update(
                    endpoint, {'id': ref.entity_id, 'isActive': self._flag(ref, False)}
                )
                self.run.record_mutation(
                    MutationKind.UPDATE, ref.kind.value, ref.entity_id, 'restored inactive'
                )
            except Exception as e:
                message = (
                    f'Failed to deactivate {ref.kind.value} {ref.entity_id} after '
                    'operation completed. Please deactivate manually.'
                )
                self.logger.error(f'{message} ({e})')
                self.run.warn(message)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation``; on an inactive-reference rejection retry it once."""
        try:
            return await operation()
        except Exception as e:
            ref = self.classifier.classify(e)
            if ref is None:
                raise
            return await self.with_temporary_activation(ref, operation, e)

    async def write_with_fallback(
        self,
        payload: Dict[str, Any],
        write: Callable[[Dict[str, Any]], Awaitable[T]],
        label: str = 'record',
    ) -> T:
        """Write ``payload``, stripping reference fields the API names without an id.

        At most ``MAX_FIELD_STRIPS`` fields are dropped, each with a warning.
        The caller's dict is not modified.
        """
        payload = dict(payload)
        attempt = 0
        while True:
            try:
                return await self.call(lambda: write(payload))
            except Exception as e:
                field = self.classifier.offending_field(e)
                if not field or field not in payload or attempt >= MAX_FIELD_STRIPS:
                    raise
                value = payload.pop(field)
                message = (
                    f'Field "{field}" (value: {value}) references an inactive or '
                    f'deleted entity and was stripped from the destination {label}.'
                )
                self.logger.warning(message)
                self.run.warn(message)
                attempt += 1
