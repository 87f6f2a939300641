"""Shared fixtures: an in-memory PSA tenant behind the real client interface."""

import copy
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from psa_migrate.api.client import PSAClient
from psa_migrate.api.exceptions import PSAAPIError, PSANotFoundError
from psa_migrate.api.metadata import EntityMetadata
from psa_migrate.config.config import PSAInstanceConfig
from psa_migrate.migration.orchestrator import MigrationOrchestrator
from psa_migrate.migration.strategy import MigrationContext

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

# nested create/patch endpoints and the collection they write to
CHILD_ROUTES = {
    ('Companies', 'Contacts'): ('Contacts', 'companyID'),
    ('Companies', 'Notes'): ('CompanyNotes', 'companyID'),
    ('ConfigurationItems', 'Notes'): ('ConfigurationItemNotes', 'configurationItemID'),
    ('Tasks', 'Notes'): ('TaskNotes', 'taskID'),
    ('Tickets', 'Notes'): ('TicketNotes', 'ticketID'),
    ('Projects', 'Notes'): ('ProjectNotes', 'projectID'),
}


def _field(name, required=False, read_only=False, picklist=None):
    field = {
        'name': name,
        'isRequired': required,
        'isReadOnly': read_only,
        'isPickList': picklist is not None,
    }
    if picklist is not None:
        field['picklistValues'] = picklist
    return field


def _status_picklist(*entries):
    return [
        {'value': value, 'label': label, 'isActive': True, 'isDefaultValue': False}
        for value, label in entries
    ]


NOTE_ACTION_TYPES = [
    {'value': 1, 'label': 'General', 'isActive': True, 'isDefaultValue': True},
    {'value': 2, 'label': 'Phone', 'isActive': True, 'isDefaultValue': False},
]

DEFAULT_FIELDS = {
    'Contacts': [
        _field('id', read_only=True),
        _field('createDate', read_only=True),
        _field('companyID', required=True),
        _field('companyLocationID'),
        _field('firstName', required=True),
        _field('lastName', required=True),
        _field('emailAddress'),
        _field('title'),
        _field('isActive', required=True),
        _field('isPrimaryContact'),
        _field('userDefinedFields'),
    ],
    'CompanyNotes': [
        _field('id', read_only=True),
        _field('createDateTime', read_only=True),
        _field('companyID', required=True),
        _field('contactID'),
        _field('title', required=True),
        _field('description', required=True),
        _field('actionType', required=True, picklist=NOTE_ACTION_TYPES),
        _field('publish'),
    ],
    'ConfigurationItems': [
        _field('id', read_only=True),
        _field('companyID', required=True),
        _field('companyLocationID'),
        _field('contactID'),
        _field('productID', required=True),
        _field('referenceTitle'),
        _field('serialNumber'),
        _field('installedProductCategoryID'),
        _field('isActive', required=True),
        _field('parentConfigurationItemID'),
        _field('userDefinedFields'),
    ],
    'ConfigurationItemNotes': [
        _field('id', read_only=True),
        _field('configurationItemID', required=True),
        _field('title', required=True),
        _field('description', required=True),
        _field('actionType', required=True, picklist=NOTE_ACTION_TYPES),
        _field('publish'),
    ],
    'Tickets': [
        _field('status', required=True, picklist=_status_picklist(
            (1, 'New'), (5, 'Complete'), (8, 'In Progress'), (13, 'Waiting Customer'),
        )),
    ],
    'Tasks': [
        _field('status', required=True, picklist=_status_picklist(
            (1, 'New'), (5, 'Complete'), (8, 'In Progress'),
        )),
    ],
    'Projects': [
        _field('status', required=True, picklist=_status_picklist(
            (0, 'Inactive'), (1, 'New'), (2, 'Active'), (5, 'Complete'),
        )),
    ],
    'Opportunities': [
        _field('status', required=True, picklist=_status_picklist(
            (0, 'Inactive'), (1, 'Active'), (3, 'Closed'),
        )),
    ],
}


def _matches(record: Dict[str, Any], condition: Dict[str, Any]) -> bool:
    op = condition['op']
    actual = record.get(condition['field'])
    expected = condition.get('value')
    if op == 'eq':
        return actual == expected
    if op == 'noteq':
        return actual != expected
    if op == 'in':
        return actual in expected
    if op == 'notIn':
        return actual not in expected
    if op == 'exist':
        return actual not in (None, '')
    if op == 'notExist':
        return actual in (None, '')
    if actual in (None, ''):
        return False
    if op == 'lt':
        return actual < expected
    if op == 'lte':
        return actual <= expected
    if op == 'gt':
        return actual > expected
    if op == 'gte':
        return actual >= expected
    raise AssertionError(f'unsupported filter op {op}')


class FakePSAClient(PSAClient):
    """PSA client whose transport is a dict of collections.

    Failures are injected per method and endpoint pattern; every request is
    recorded in ``calls``.
    """

    def __init__(self, config: PSAInstanceConfig):
        super().__init__(config)
        self.store: Dict[str, Dict[int, Dict[str, Any]]] = defaultdict(dict)
        self.attachments: Dict[str, Dict[int, Dict[str, Any]]] = defaultdict(dict)
        self.fields: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(DEFAULT_FIELDS)
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self._failures: List[Dict[str, Any]] = []
        self._next_id = 90000

    def add(self, collection: str, **record) -> Dict[str, Any]:
        self.store[collection][record['id']] = record
        return record

    def add_attachment(self, base: str, attachment_id: int, data: str, **extra) -> Dict[str, Any]:
        record = {
            'id': attachment_id,
            'data': data,
            'fullPath': extra.pop('fullPath', f'file-{attachment_id}.txt'),
            'title': extra.pop('title', f'File {attachment_id}'),
            'attachmentType': 'FILE_ATTACHMENT',
            'publish': 1,
            **extra,
        }
        self.attachments[base][attachment_id] = record
        return record

    def fail(
        self,
        method: str,
        pattern: str,
        error: Exception,
        times: Optional[int] = 1,
        when: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> None:
        """Make matching requests raise ``error``; ``times=None`` means always."""
        self._failures.append(
            {'method': method, 'pattern': pattern, 'error': error, 'remaining': times, 'when': when}
        )

    def calls_to(self, method: str, pattern: str = '.*') -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method and re.fullmatch(pattern, c[1])]

    @property
    def writes(self) -> List[Tuple[str, str, Any]]:
        """Every mutating request, queries excluded."""
        return [
            c
            for c in self.calls
            if c[0] in ('PATCH', 'DELETE', 'PUT')
            or (c[0] == 'POST' and not re.search(r'/query(/count)?$', c[1]))
        ]

    def records(self, collection: str, **criteria) -> List[Dict[str, Any]]:
        return [
            r
            for _, r in sorted(self.store[collection].items())
            if all(r.get(k) == v for k, v in criteria.items())
        ]

    async def request(self, method, endpoint, body=None):
        self.calls.append((method, endpoint, copy.deepcopy(body)))
        for failure in self._failures:
            if failure['method'] != method or failure['remaining'] == 0:
                continue
            if not re.fullmatch(failure['pattern'], endpoint):
                continue
            if failure['when'] is not None and not failure['when'](body or {}):
                continue
            if failure['remaining'] is not None:
                failure['remaining'] -= 1
            raise failure['error']
        return self._dispatch(method, endpoint, copy.deepcopy(body))

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    @staticmethod
    def _not_found(endpoint: str) -> PSANotFoundError:
        return PSANotFoundError(f'Resource not found: {endpoint}', status_code=404)

    def _dispatch(self, method: str, endpoint: str, body: Optional[Dict[str, Any]]):
        parts = endpoint.strip('/').split('/')

        if method == 'GET' and parts[-2:] == ['entityInformation', 'fields']:
            return {'fields': copy.deepcopy(self.fields.get(parts[0], []))}

        if method == 'POST' and parts[-1] == 'query':
            records = self._query(parts[0], body['filter'])
            return {'items': records, 'pageDetails': {'count': len(records), 'nextPageUrl': None}}

        if method == 'POST' and parts[-2:] == ['query', 'count']:
            return {'queryCount': len(self._query(parts[0], body['filter']))}

        if 'Attachments' in parts:
            return self._attachment(method, endpoint, parts, body)

        collection, parent_field, parent_id, rest = self._route(parts)
        records = self.store[collection]

        if method == 'GET':
            record = records.get(int(rest[0])) if rest else None
            if record is None:
                raise self._not_found(endpoint)
            return {'item': copy.deepcopy(record)}

        if method == 'POST':
            new_id = self._new_id()
            record = {**body, 'id': new_id}
            if parent_field:
                record[parent_field] = parent_id
            records[new_id] = record
            return {'itemId': new_id}

        if method == 'PATCH':
            record = records.get(body['id'])
            if record is None:
                raise self._not_found(endpoint)
            record.update({k: v for k, v in body.items() if k != 'id'})
            return {'itemId': body['id']}

        if method == 'DELETE':
            if records.pop(int(rest[0]), None) is None:
                raise self._not_found(endpoint)
            return {'itemId': int(rest[0])}

        raise PSAAPIError(f'HTTP 405: {method} not allowed on {endpoint}', status_code=405)

    @staticmethod
    def _route(parts: List[str]):
        if len(parts) >= 3 and (parts[0], parts[2]) in CHILD_ROUTES:
            collection, parent_field = CHILD_ROUTES[(parts[0], parts[2])]
            return collection, parent_field, int(parts[1]), parts[3:]
        return parts[0], None, None, parts[1:]

    def _attachment(self, method: str, endpoint: str, parts: List[str], body):
        index = parts.index('Attachments')
        base = '/'.join(parts[: index + 1])
        attachments = self.attachments[base]
        if method == 'GET':
            if len(parts) > index + 1:
                record = attachments.get(int(parts[index + 1]))
                if record is None:
                    raise self._not_found(endpoint)
                return {'items': [copy.deepcopy(record)]}
            return {
                'items': [
                    {k: v for k, v in record.items() if k != 'data'}
                    for _, record in sorted(attachments.items())
                ]
            }
        if method == 'POST':
            new_id = self._new_id()
            attachments[new_id] = {**body, 'id': new_id}
            return {'itemId': new_id}
        raise PSAAPIError(f'HTTP 405: {method} not allowed on {endpoint}', status_code=405)

    def _query(self, collection: str, filters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(record)
            for _, record in sorted(self.store[collection].items())
            if all(_matches(record, condition) for condition in filters)
        ]


class RecordingSleep:
    """Async sleep that returns at once and remembers what it was asked for."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def api_config():
    return PSAInstanceConfig(
        url='https://webservices5.autotask.net',
        username='api@example.com',
        secret='secret',
        integration_code='CODE',
        rate_limit_per_second=1000,
    )


@pytest.fixture
def fake_client(api_config):
    return FakePSAClient(api_config)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def context(fake_client, sleep):
    return MigrationContext(
        client=fake_client,
        metadata=EntityMetadata(fake_client),
        sleep=sleep,
        now=lambda: FIXED_NOW,
    )


@pytest.fixture
def orchestrator(context):
    return MigrationOrchestrator(context)
