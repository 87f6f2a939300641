"""Tests for moving contacts between companies."""

import pytest

from psa_migrate.api.exceptions import PSAAPIError
from psa_migrate.migration.exceptions import (
    DuplicateTargetError,
    EntityNotFoundError,
    InactiveTargetError,
    MigrationError,
    NoOpMoveError,
    ScopeMismatchError,
)
from psa_migrate.migration.strategy import ContactMoveStrategy
from psa_migrate.models.request import ContactMoveRequest, DuplicatePolicy

PNG_DATA = 'aGVsbG8='


@pytest.fixture
def tenant(fake_client):
    client = fake_client
    client.add('Companies', id=10, companyName='Old Co', isActive=True)
    client.add('Companies', id=55, companyName='New Co', isActive=True)
    client.add('Companies', id=56, companyName='Gone Co', isActive=False)
    client.add('CompanyLocations', id=300, companyID=10, name='HQ')
    client.add('CompanyLocations', id=610, companyID=55, name='HQ')
    client.add('CompanyLocations', id=611, companyID=55, name='Branch')
    client.add(
        'Contacts',
        id=1001,
        companyID=10,
        companyLocationID=300,
        firstName='Ada',
        lastName='Lovelace',
        emailAddress='a@x.com',
        isActive=1,
        createDate='2020-01-01T00:00:00Z',
    )
    client.add('ContactGroupContacts', id=7001, contactID=1001, contactGroupID=12)
    client.add(
        'CompanyNotes',
        id=801,
        companyID=10,
        contactID=1001,
        title='Call',
        description='Discussed renewal',
        actionType=2,
    )
    client.add_attachment('Companies/10/Notes/801/Attachments', 901, PNG_DATA, fullPath='a.txt')
    return client


def _request(**overrides):
    options = {
        'source_contact_id': 1001,
        'destination_company_id': 55,
        'source_audit_note': ContactMoveStrategy.DEFAULT_SOURCE_AUDIT_NOTE,
        'destination_audit_note': ContactMoveStrategy.DEFAULT_DESTINATION_AUDIT_NOTE,
    }
    options.update(overrides)
    return ContactMoveRequest(**options)


async def _move(context, orchestrator, **overrides):
    return await orchestrator.execute(ContactMoveStrategy(context, _request(**overrides)))


class TestContactMove:
    """End-to-end contact moves against the in-memory tenant."""

    @pytest.mark.asyncio
    async def test_moves_contact_with_groups_notes_and_attachments(
        self, tenant, context, orchestrator
    ):
        report = await _move(context, orchestrator, idempotency_key='run-1')

        new_id = report['newContactId']
        created = tenant.store['Contacts'][new_id]
        assert report['state'] == 'done'
        assert report['runId'] == 'run-1'
        assert report['contactIdMapping'] == {'1001': new_id}
        assert created['companyID'] == 55
        assert created['companyLocationID'] == 610
        assert created['emailAddress'] == 'a@x.com'
        assert 'createDate' not in created

        assert tenant.store['Contacts'][1001]['isActive'] == 0
        assert report['status']['sourceDeactivated'] is True
        assert report['status']['auditNotesCreated'] is True

        assert tenant.records('ContactGroupContacts', contactID=new_id)[0]['contactGroupID'] == 12
        assert report['counters']['contactGroups']['copied'] == 1
        assert report['counters']['companyNotes']['copied'] == 1
        assert report['counters']['noteAttachments']['copied'] == 1

        copied_note = tenant.records('CompanyNotes', contactID=new_id, title='Call')[0]
        assert copied_note['companyID'] == 55
        assert copied_note['actionType'] == 2
        assert copied_note['description'].startswith(
            '[MIGRATED] From Contact 1001 (Company 10) on 2024-05-01T12:00:00Z by psa-migrate'
        )
        assert copied_note['description'].endswith('Discussed renewal')

        uploaded = tenant.attachments[f'Companies/55/Notes/{copied_note["id"]}/Attachments']
        assert [a['data'] for a in uploaded.values()] == [PNG_DATA]
        assert report['mapping']['companyNotes'] == {'801': copied_note['id']}

    @pytest.mark.asyncio
    async def test_audit_notes_on_both_companies(self, tenant, context, orchestrator):
        report = await _move(context, orchestrator)

        new_id = report['newContactId']
        source_note = tenant.records('CompanyNotes', companyID=10, title='Contact Moved')[0]
        destination_note = tenant.records('CompanyNotes', companyID=55, title='Contact Moved')[0]
        assert source_note['contactID'] == 1001
        assert f'new Contact ID: {new_id} on 2024-05-01' in source_note['description']
        assert 'Contact Ada Lovelace (ID: 1001)' in source_note['description']
        assert destination_note['contactID'] == new_id
        assert 'original Contact ID: 1001' in destination_note['description']

    @pytest.mark.asyncio
    async def test_mutations_are_logged_in_order(self, tenant, context, orchestrator):
        report = await _move(context, orchestrator)

        log = report['mutationLog']
        assert [m['sequence'] for m in log] == list(range(1, len(log) + 1))
        assert log[0]['kind'] == 'create' and log[0]['entity'] == 'contact'
        assert log[-1] == {
            'sequence': len(log),
            'kind': 'update',
            'entity': 'contact',
            'id': 1001,
            'detail': 'source deactivated',
        }

    @pytest.mark.asyncio
    async def test_location_left_empty_without_match(self, tenant, context, orchestrator):
        tenant.store['CompanyLocations'][610]['name'] = 'Warehouse'

        report = await _move(context, orchestrator)

        created = tenant.store['Contacts'][report['newContactId']]
        assert 'companyLocationID' not in created
        assert any('No location named "HQ"' in w for w in report['status']['warnings'])

    @pytest.mark.asyncio
    async def test_ambiguous_location_takes_lowest_id(self, tenant, context, orchestrator):
        tenant.add('CompanyLocations', id=612, companyID=55, name='HQ')

        report = await _move(context, orchestrator)

        assert tenant.store['Contacts'][report['newContactId']]['companyLocationID'] == 610
        assert any('2 locations named "HQ"' in w for w in report['status']['warnings'])

    @pytest.mark.asyncio
    async def test_explicit_location_must_belong_to_destination(
        self, tenant, context, orchestrator
    ):
        with pytest.raises(ScopeMismatchError):
            await _move(context, orchestrator, destination_location_id=300)
        assert tenant.writes == []

    @pytest.mark.asyncio
    async def test_same_company_is_rejected(self, tenant, context, orchestrator):
        with pytest.raises(NoOpMoveError) as exc_info:
            await _move(context, orchestrator, destination_company_id=10)

        assert 'No move needed' in str(exc_info.value)
        assert tenant.writes == []

    @pytest.mark.asyncio
    async def test_missing_source(self, tenant, context, orchestrator):
        with pytest.raises(EntityNotFoundError):
            await _move(context, orchestrator, source_contact_id=4242)

    @pytest.mark.asyncio
    async def test_inactive_destination_company(self, tenant, context, orchestrator):
        with pytest.raises(InactiveTargetError):
            await _move(context, orchestrator, destination_company_id=56)

    @pytest.mark.asyncio
    async def test_duplicate_email_fails_by_default(self, tenant, context, orchestrator):
        tenant.add('Contacts', id=2002, companyID=55, emailAddress='a@x.com', isActive=1)

        with pytest.raises(DuplicateTargetError) as exc_info:
            await _move(context, orchestrator)

        assert exc_info.value.existing_id == 2002
        assert tenant.writes == []

    @pytest.mark.asyncio
    async def test_duplicate_email_skip_policy(self, tenant, context, orchestrator):
        tenant.add('Contacts', id=2002, companyID=55, emailAddress='a@x.com', isActive=1)

        report = await _move(context, orchestrator, duplicate_policy=DuplicatePolicy.SKIP)

        assert report['state'] == 'done'
        assert report['status']['skipped']['contact'] == ['1001']
        assert report['preflight']['existingContactId'] == 2002
        assert 'newContactId' not in report
        assert tenant.writes == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, tenant, context, orchestrator):
        report = await _move(context, orchestrator, dry_run=True)

        assert tenant.writes == []
        assert report['dryRun'] is True
        plan = report['plan']
        assert plan['payload']['companyID'] == 55
        assert plan['payload']['companyLocationID'] == 610
        assert plan['subResources']['noteAttachments'] == [
            {'id': 901, 'noteId': 801, 'title': 'File 901', 'fullPath': 'a.txt'}
        ]
        assert report['preflight']['inScopeCounts'] == {'contactGroups': 1, 'companyNotes': 1}

    @pytest.mark.asyncio
    async def test_one_note_failure_does_not_stop_the_others(
        self, tenant, context, orchestrator
    ):
        for index in range(2, 6):
            tenant.add(
                'CompanyNotes',
                id=800 + index,
                companyID=10,
                contactID=1001,
                title=f'n{index}',
                description=f'note {index}',
            )
        tenant.fail(
            'POST',
            r'Companies/55/Notes',
            PSAAPIError('API request failed: Title rejected', status_code=400),
            times=None,
            when=lambda body: body.get('title') in ('n2', 'n4'),
        )

        report = await _move(context, orchestrator, copy_note_attachments=False)

        counters = report['counters']['companyNotes']
        assert counters['planned'] == 5
        assert counters['copied'] == 3
        assert counters['failed'] == 2
        assert report['state'] == 'done'
        assert set(report['mapping']['companyNotes']) == {'801', '803', '805'}
        warnings = report['status']['warnings']
        assert any('Failed to copy company note 802' in w for w in warnings)
        assert any('Failed to copy company note 804' in w for w in warnings)

    @pytest.mark.asyncio
    async def test_attachment_of_failed_note_is_skipped(self, tenant, context, orchestrator):
        tenant.fail(
            'POST',
            r'Companies/55/Notes',
            PSAAPIError('API request failed: Title rejected', status_code=400),
            when=lambda body: body.get('title') == 'Call',
        )

        report = await _move(context, orchestrator)

        assert report['counters']['noteAttachments']['skipped'] == 1
        assert report['status']['skipped']['noteAttachments'] == ['901']

    @pytest.mark.asyncio
    async def test_failed_audit_note_keeps_source_active(self, tenant, context, orchestrator):
        tenant.fail(
            'POST',
            r'Companies/10/Notes',
            PSAAPIError('API request failed: Notes are locked', status_code=400),
        )

        report = await _move(context, orchestrator)

        assert report['state'] == 'done'
        assert report['status']['auditNotesCreated'] is False
        assert report['status']['sourceDeactivated'] is False
        assert tenant.store['Contacts'][1001]['isActive'] == 1
        warnings = report['status']['warnings']
        assert 'One or more audit notes could not be created.' in warnings
        assert any('deactivation skipped' in w for w in warnings)

    @pytest.mark.asyncio
    async def test_keep_source_active(self, tenant, context, orchestrator):
        report = await _move(context, orchestrator, deactivate_source=False)

        assert tenant.store['Contacts'][1001]['isActive'] == 1
        assert report['status']['sourceDeactivated'] is False

    @pytest.mark.asyncio
    async def test_primary_contact_warning(self, tenant, context, orchestrator):
        tenant.store['Contacts'][1001]['isPrimaryContact'] = True

        report = await _move(context, orchestrator)

        assert any('primary contact for company 10' in w for w in report['status']['warnings'])

    @pytest.mark.asyncio
    async def test_verification_failure_deactivates_destination(
        self, tenant, context, orchestrator
    ):
        # the API accepted the create but filed the contact elsewhere
        original = tenant._dispatch

        def misfile(method, endpoint, body):
            result = original(method, endpoint, body)
            if method == 'POST' and endpoint == 'Companies/55/Contacts':
                tenant.store['Contacts'][result['itemId']]['companyID'] = 10
            return result

        tenant._dispatch = misfile

        with pytest.raises(MigrationError) as exc_info:
            await _move(context, orchestrator, idempotency_key='run-verify')

        report = exc_info.value.report
        new_id = report['newContactId']
        assert report['state'] == 'failed'
        assert tenant.store['Contacts'][new_id]['isActive'] == 0
        assert tenant.store['Contacts'][1001]['isActive'] == 1
        partial = tenant.records('CompanyNotes', title='Partial migration')[0]
        assert 'Partial migration run run-verify' in partial['description']
