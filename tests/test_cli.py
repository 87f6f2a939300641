"""Tests for CLI interface."""

import json
import os

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from click.testing import CliRunner
from loguru import logger

from psa_migrate.cli.main import cli
from psa_migrate.config.config import Config, PSAInstanceConfig
from psa_migrate.migration.exceptions import InactiveTargetError, MigrationFailedError
from psa_migrate.migration.strategy import ContactMoveStrategy
from psa_migrate.models.request import (
    ConfigurationItemMoveRequest,
    ContactMoveRequest,
    OversizePolicy,
    OwnershipTransferRequest,
    TicketAssignmentMode,
)

REPORT = {
    'runId': 'run-123',
    'workflow': 'contact-move',
    'state': 'DONE',
    'dryRun': False,
    'destinationId': 90001,
    'counters': {'companyNote': {'planned': 2, 'copied': 2, 'failed': 0, 'skipped': 0}},
    'latencyPerPhase': {'totalMs': 42},
    'status': {'warnings': ['Source contact was the primary contact of company 10.']},
    'failures': [],
}


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # handlers added during invoke point at the runner's closed streams
    logger.remove()


@pytest.fixture
def config_file(tmp_path):
    config = Config(
        api=PSAInstanceConfig(
            url='https://webservices5.autotask.net',
            username='api@example.com',
            secret='secret',
            integration_code='CODE',
        )
    )
    path = tmp_path / 'config.yaml'
    config.to_file(str(path))
    return str(path)


def _engine_patch(**operations):
    """Patch the engine class so ``with MigrationEngine(...)`` yields a mock."""
    engine = MagicMock()
    for name, result in operations.items():
        if isinstance(result, Exception):
            setattr(engine, name, AsyncMock(side_effect=result))
        else:
            setattr(engine, name, AsyncMock(return_value=result))
    engine_class = MagicMock()
    engine_class.return_value.__enter__.return_value = engine
    return patch('psa_migrate.cli.main.MigrationEngine', engine_class), engine


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runner = CliRunner()

    def test_cli_help(self):
        """Test CLI help command."""
        result = self.runner.invoke(cli, ['--help'])

        assert result.exit_code == 0
        assert 'PSA Migration Tool' in result.output
        for command in ('init', 'validate', 'status', 'zone', 'move-contact',
                        'move-configuration-item', 'transfer-ownership'):
            assert command in result.output

    def test_cli_version(self):
        """Test CLI version command."""
        result = self.runner.invoke(cli, ['--version'])

        assert result.exit_code == 0
        assert '0.1.0' in result.output

    def test_init_command(self, tmp_path):
        """Test init command."""
        config_path = str(tmp_path / 'test_config.yaml')

        result = self.runner.invoke(cli, ['init', '--output', config_path])

        assert result.exit_code == 0
        assert 'Configuration template created' in result.output
        assert os.path.exists(config_path)

        with open(config_path, 'r') as f:
            content = f.read()
            assert 'api:' in content
            assert 'migration:' in content
            assert 'logging:' in content

    def test_init_command_default_output(self):
        """Test init command with default output."""
        with self.runner.isolated_filesystem():
            result = self.runner.invoke(cli, ['init'])

            assert result.exit_code == 0
            assert os.path.exists('config.yaml')

    def test_status_command_success(self, config_file):
        """Test successful status command."""
        result = self.runner.invoke(cli, ['--config', config_file, 'status'])

        assert result.exit_code == 0
        assert 'PSA Migration Configuration' in result.output
        assert 'webservices5.autotask.net' in result.output
        assert 'deactivateDestination' in result.output

    @patch('psa_migrate.cli.main._load_config')
    def test_status_command_failure(self, mock_load_config):
        """Test status command failure."""
        mock_load_config.side_effect = FileNotFoundError('No configuration found')

        result = self.runner.invoke(cli, ['status'])

        assert result.exit_code == 1
        assert 'No configuration found' in result.output

    def test_validate_command_success(self, config_file):
        """Test successful validate command."""
        engine_patch, engine = _engine_patch()
        engine.client.get_threshold_information.return_value = {
            'currentTimeframeRequestCount': 12,
            'externalRequestThreshold': 10000,
        }

        with engine_patch:
            result = self.runner.invoke(cli, ['--config', config_file, 'validate'])

        assert result.exit_code == 0
        assert 'Connectivity validation passed' in result.output
        assert '12 of 10000' in result.output
        engine.test_connectivity.assert_called_once()

    def test_validate_command_failure(self, config_file):
        """Test validate command failure."""
        engine_patch, engine = _engine_patch()
        engine.test_connectivity.side_effect = ConnectionError('Cannot reach PSA zone')

        with engine_patch:
            result = self.runner.invoke(cli, ['--config', config_file, 'validate'])

        assert result.exit_code == 1
        assert 'Validation failed' in result.output

    @patch('psa_migrate.cli.main.PSAClient.resolve_zone')
    def test_zone_command(self, mock_resolve):
        """Test zone lookup command."""
        mock_resolve.return_value = {
            'zoneName': 'America East 5',
            'url': 'https://webservices5.autotask.net/',
            'webUrl': 'https://ww5.autotask.net/',
        }

        result = self.runner.invoke(cli, ['zone', 'api@example.com'])

        assert result.exit_code == 0
        assert 'America East 5' in result.output
        mock_resolve.assert_called_once_with('api@example.com')


class TestMoveCommands:
    """Test workflow commands."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runner = CliRunner()

    def test_move_contact(self, config_file):
        """Test contact move builds the request and prints the report."""
        engine_patch, engine = _engine_patch(move_contact=REPORT)

        with engine_patch:
            result = self.runner.invoke(
                cli, ['--config', config_file, 'move-contact', '1001', '55', '--location-id', '610']
            )

        assert result.exit_code == 0
        assert 'Contact move completed (run run-123)' in result.output
        assert 'primary contact' in result.output

        request = engine.move_contact.await_args.args[0]
        assert isinstance(request, ContactMoveRequest)
        assert request.source_contact_id == 1001
        assert request.destination_company_id == 55
        assert request.destination_location_id == 610
        assert request.deactivate_source is True
        assert request.source_audit_note == ContactMoveStrategy.DEFAULT_SOURCE_AUDIT_NOTE
        assert request.oversize_policy == OversizePolicy.SKIP_AND_NOTE

    def test_move_contact_options(self, config_file):
        """Test flags map onto the request."""
        engine_patch, engine = _engine_patch(move_contact={**REPORT, 'dryRun': True})

        with engine_patch:
            result = self.runner.invoke(
                cli,
                [
                    '--config', config_file, 'move-contact', '1001', '55',
                    '--dry-run', '--keep-source-active', '--no-audit-notes',
                    '--skip-contact-groups', '--duplicate-policy', 'skip',
                    '--oversize-policy', 'fail', '--idempotency-key', 'ticket-881',
                ],
            )

        assert result.exit_code == 0
        assert 'Contact move planned' in result.output
        request = engine.move_contact.await_args.args[0]
        assert request.dry_run is True
        assert request.deactivate_source is False
        assert request.source_audit_note == ''
        assert request.destination_audit_note == ''
        assert request.copy_contact_groups is False
        assert request.duplicate_policy.value == 'skip'
        assert request.oversize_policy == OversizePolicy.FAIL
        assert request.idempotency_key == 'ticket-881'

    def test_move_contact_json(self, config_file):
        """Test JSON report output."""
        engine_patch, _ = _engine_patch(move_contact=REPORT)

        with engine_patch:
            result = self.runner.invoke(
                cli, ['--config', config_file, 'move-contact', '1001', '55', '--json']
            )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == REPORT

    def test_move_contact_preflight_failure(self, config_file):
        """Test a failed run exits non-zero."""
        error = InactiveTargetError(
            'Destination company 56 is inactive', entity_kind='company', entity_id=56
        )
        engine_patch, _ = _engine_patch(move_contact=error)

        with engine_patch:
            result = self.runner.invoke(
                cli, ['--config', config_file, 'move-contact', '1001', '56']
            )

        assert result.exit_code == 1
        assert 'Contact move failed' in result.output
        assert 'inactive' in result.output

    def test_move_contact_failure_json_includes_report(self, config_file):
        """Test a failed run prints its partial report as JSON."""
        report = {**REPORT, 'state': 'FAILED'}
        error = MigrationFailedError('Run failed during copy', report=report)
        engine_patch, _ = _engine_patch(move_contact=error)

        with engine_patch:
            result = self.runner.invoke(
                cli, ['--config', config_file, 'move-contact', '1001', '55', '--json']
            )

        assert result.exit_code == 1
        payload = json.loads(result.stdout)
        assert payload['report']['state'] == 'FAILED'
        assert 'Run failed during copy' in payload['error']

    def test_move_contact_invalid_request(self, config_file):
        """Test request validation errors are reported."""
        engine_patch, engine = _engine_patch(move_contact=REPORT)

        with engine_patch:
            result = self.runner.invoke(
                cli, ['--config', config_file, 'move-contact', '0', '55']
            )

        assert result.exit_code == 1
        assert 'Invalid request' in result.output
        engine.move_contact.assert_not_awaited()

    def test_move_configuration_item(self, config_file):
        """Test configuration item move."""
        report = {**REPORT, 'workflow': 'configuration-item-move'}
        engine_patch, engine = _engine_patch(move_configuration_item=report)

        with engine_patch:
            result = self.runner.invoke(
                cli,
                [
                    '--config', config_file, 'move-configuration-item', '4001', '20',
                    '--contact-id', '77', '--auto-map-location', '--skip-udfs',
                    '--masked-field-policy', 'fail',
                ],
            )

        assert result.exit_code == 0
        request = engine.move_configuration_item.await_args.args[0]
        assert isinstance(request, ConfigurationItemMoveRequest)
        assert request.source_configuration_item_id == 4001
        assert request.destination_contact_id == 77
        assert request.auto_map_location is True
        assert request.copy_udfs is False
        assert request.masked_field_policy.value == 'fail'

    def test_transfer_ownership(self, config_file):
        """Test ownership transfer."""
        report = {**REPORT, 'workflow': 'ownership-transfer', 'destinationId': 31}
        engine_patch, engine = _engine_patch(transfer_ownership=report)

        with engine_patch:
            result = self.runner.invoke(
                cli,
                [
                    '--config', config_file, 'transfer-ownership', '29', '31',
                    '--due-before', '2024-05-31', '--company-id', '10', '--company-id', '12',
                    '--status-label', 'New', '--ticket-assignment-mode', 'primaryAndSecondary',
                    '--dry-run',
                ],
            )

        assert result.exit_code == 0
        assert 'Ownership transfer' in result.output
        request = engine.transfer_ownership.await_args.args[0]
        assert isinstance(request, OwnershipTransferRequest)
        assert request.source_resource_id == 29
        assert request.destination_resource_id == 31
        assert request.company_ids == [10, 12]
        assert request.status_allowlist_by_label == ['New']
        assert request.ticket_assignment_mode == TicketAssignmentMode.PRIMARY_AND_SECONDARY
        assert request.max_items_per_entity == 500
        assert request.dry_run is True
