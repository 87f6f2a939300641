"""Main CLI entry point for the PSA Migration Tool."""

import sys
import json
import asyncio
from typing import Any, Dict, Optional, Tuple
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .. import __version__
from ..api.client import PSAClient
from ..config.config import Config
from ..migration.engine import MigrationEngine
from ..migration.exceptions import MigrationError
from ..migration.strategy import ConfigurationItemMoveStrategy, ContactMoveStrategy
from ..models.request import (
    ConfigurationItemMoveRequest,
    ContactMoveRequest,
    DuplicatePolicy,
    MaskedFieldPolicy,
    OversizePolicy,
    OwnershipTransferRequest,
    PartialFailureStrategy,
    TicketAssignmentMode,
)
from ..utils.logging import setup_logging

console = Console()

DEFAULT_CONFIG_PATHS = ['config.yaml', 'config.yml', '.psa-migrate.yaml']


@click.group()
@click.version_option(version=__version__, prog_name='psa-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """PSA Migration Tool - Move contacts and configuration items between companies and transfer resource ownership."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    setup_logging('DEBUG' if verbose else 'WARNING')


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]PSA Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)
        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(f'[yellow]Please edit {output} with your PSA API credentials[/yellow]')
    except OSError as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration and connectivity to the PSA zone."""
    console.print(
        Panel.fit(
            '[bold cyan]PSA Migration Tool[/bold cyan]\nValidating configuration...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        with MigrationEngine(config) as engine:
            engine.test_connectivity()
            thresholds = engine.client.get_threshold_information()

        console.print('[green]✓[/green] Connectivity validation passed')
        if thresholds:
            console.print(
                f'[blue]API usage:[/blue] {thresholds.get("currentTimeframeRequestCount", "?")} '
                f'of {thresholds.get("externalRequestThreshold", "?")} requests this hour'
            )
        console.print('[green]✓[/green] Configuration validation completed')

    except Exception as e:
        console.print(f'[red]✗[/red] Validation failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('username')
def zone(username: str) -> None:
    """Look up the zone URL that hosts USERNAME."""
    try:
        info = PSAClient.resolve_zone(username)
    except Exception as e:
        console.print(f'[red]✗[/red] Zone lookup failed: {e}')
        sys.exit(1)

    table = Table(title=f'Zone for {username}')
    table.add_column('Setting', style='cyan')
    table.add_column('Value', style='green')
    for key in ('zoneName', 'url', 'webUrl', 'ci'):
        if key in info:
            table.add_row(key, str(info[key]))
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the effective configuration."""
    try:
        config = _load_config(ctx)
    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load configuration: {e}')
        sys.exit(1)

    migration = config.migration
    table = Table(title='PSA Migration Configuration')
    table.add_column('Setting', style='cyan')
    table.add_column('Value', style='green')

    table.add_row('Zone URL', config.api.url)
    table.add_row('API User', config.api.username)
    table.add_row('Impersonation', str(config.api.impersonation_resource_id or '-'))
    table.add_row('Max Retries', str(migration.retry.max_retries))
    table.add_row('Base Delay (ms)', str(migration.retry.base_delay_ms))
    table.add_row('Upload Budget', f'{migration.throttle.max_bytes_per_window} bytes / {migration.throttle.window_seconds:g}s')
    table.add_row('Max Item Size', f'{migration.throttle.max_single_item_bytes} bytes')
    table.add_row('Oversize Policy', migration.oversize_policy.value)
    table.add_row('Masked Field Policy', migration.masked_field_policy.value)
    table.add_row('Partial Failure', migration.partial_failure_strategy.value)
    console.print(table)


def _common_options(func):
    """Options shared by the move commands."""
    options = [
        click.option('--dry-run', is_flag=True, help='Plan only; make no changes'),
        click.option('--idempotency-key', default=None, help='Label used as the run id'),
        click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON'),
        click.option(
            '--keep-source-active',
            is_flag=True,
            help='Do not deactivate the source after the move',
        ),
        click.option('--source-audit-note', default=None, help='Source audit note template'),
        click.option(
            '--destination-audit-note', default=None, help='Destination audit note template'
        ),
        click.option('--no-audit-notes', is_flag=True, help='Write no audit notes'),
        click.option(
            '--partial-failure',
            type=click.Choice([s.value for s in PartialFailureStrategy]),
            default=None,
            help='What to do with a destination created by a failed run',
        ),
        click.option(
            '--oversize-policy',
            type=click.Choice([p.value for p in OversizePolicy]),
            default=None,
            help='What to do with attachments over the size limit',
        ),
        click.option(
            '--masked-field-policy',
            type=click.Choice([p.value for p in MaskedFieldPolicy]),
            default=None,
            help='What to do with masked user-defined fields',
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _request_options(
    config: Config,
    dry_run: bool,
    idempotency_key: Optional[str],
    keep_source_active: bool,
    audit_notes: Tuple[str, str],
    partial_failure: Optional[str],
    oversize_policy: Optional[str],
    masked_field_policy: Optional[str],
) -> Dict[str, Any]:
    migration = config.migration
    source_note, destination_note = audit_notes
    return {
        'dry_run': dry_run,
        'idempotency_key': idempotency_key,
        'deactivate_source': not keep_source_active,
        'source_audit_note': source_note,
        'destination_audit_note': destination_note,
        'retry_policy': migration.retry,
        'throttle_policy': migration.throttle,
        'oversize_policy': oversize_policy or migration.oversize_policy,
        'masked_field_policy': masked_field_policy or migration.masked_field_policy,
        'partial_failure_strategy': partial_failure or migration.partial_failure_strategy,
    }


def _audit_notes(
    strategy_class, no_audit_notes: bool, source: Optional[str], destination: Optional[str]
) -> Tuple[str, str]:
    if no_audit_notes:
        return '', ''
    return (
        source if source is not None else strategy_class.DEFAULT_SOURCE_AUDIT_NOTE,
        destination if destination is not None else strategy_class.DEFAULT_DESTINATION_AUDIT_NOTE,
    )


@cli.command('move-contact')
@click.argument('source_contact_id', type=int)
@click.argument('destination_company_id', type=int)
@click.option('--location-id', type=int, default=None, help='Destination location')
@click.option(
    '--no-auto-map-location',
    is_flag=True,
    help='Do not match the destination location by name',
)
@click.option('--skip-contact-groups', is_flag=True, help='Do not copy contact group memberships')
@click.option('--skip-notes', is_flag=True, help='Do not copy company notes')
@click.option('--skip-note-attachments', is_flag=True, help='Do not copy note attachments')
@click.option(
    '--duplicate-policy',
    type=click.Choice([p.value for p in DuplicatePolicy]),
    default=DuplicatePolicy.FAIL.value,
    help='What to do when the email already exists at the destination',
)
@_common_options
@click.pass_context
def move_contact(
    ctx: click.Context,
    source_contact_id: int,
    destination_company_id: int,
    location_id: Optional[int],
    no_auto_map_location: bool,
    skip_contact_groups: bool,
    skip_notes: bool,
    skip_note_attachments: bool,
    duplicate_policy: str,
    dry_run: bool,
    idempotency_key: Optional[str],
    as_json: bool,
    keep_source_active: bool,
    source_audit_note: Optional[str],
    destination_audit_note: Optional[str],
    no_audit_notes: bool,
    partial_failure: Optional[str],
    oversize_policy: Optional[str],
    masked_field_policy: Optional[str],
) -> None:
    """Move a contact to another company."""
    config = _prepare(ctx, as_json)
    try:
        request = ContactMoveRequest(
            source_contact_id=source_contact_id,
            destination_company_id=destination_company_id,
            destination_location_id=location_id,
            auto_map_location=not no_auto_map_location,
            copy_contact_groups=not skip_contact_groups,
            copy_company_notes=not skip_notes,
            copy_note_attachments=not skip_note_attachments,
            duplicate_policy=duplicate_policy,
            **_request_options(
                config,
                dry_run,
                idempotency_key,
                keep_source_active,
                _audit_notes(
                    ContactMoveStrategy, no_audit_notes, source_audit_note, destination_audit_note
                ),
                partial_failure,
                oversize_policy,
                masked_field_policy,
            ),
        )
    except ValueError as e:
        _fail(ctx, f'Invalid request: {e}', as_json)

    _execute(ctx, config, lambda engine: engine.move_contact(request), 'Contact move', as_json)


@cli.command('move-configuration-item')
@click.argument('source_ci_id', type=int)
@click.argument('destination_company_id', type=int)
@click.option('--location-id', type=int, default=None, help='Destination location')
@click.option('--contact-id', type=int, default=None, help='Destination contact')
@click.option('--auto-map-location', is_flag=True, help='Match the destination location by name')
@click.option('--skip-udfs', is_flag=True, help='Do not copy user-defined fields')
@click.option('--skip-attachments', is_flag=True, help='Do not copy attachments')
@click.option('--skip-notes', is_flag=True, help='Do not copy notes')
@click.option('--skip-note-attachments', is_flag=True, help='Do not copy note attachments')
@_common_options
@click.pass_context
def move_configuration_item(
    ctx: click.Context,
    source_ci_id: int,
    destination_company_id: int,
    location_id: Optional[int],
    contact_id: Optional[int],
    auto_map_location: bool,
    skip_udfs: bool,
    skip_attachments: bool,
    skip_notes: bool,
    skip_note_attachments: bool,
    dry_run: bool,
    idempotency_key: Optional[str],
    as_json: bool,
    keep_source_active: bool,
    source_audit_note: Optional[str],
    destination_audit_note: Optional[str],
    no_audit_notes: bool,
    partial_failure: Optional[str],
    oversize_policy: Optional[str],
    masked_field_policy: Optional[str],
) -> None:
    """Move a configuration item to another company."""
    config = _prepare(ctx, as_json)
    try:
        request = ConfigurationItemMoveRequest(
            source_configuration_item_id=source_ci_id,
            destination_company_id=destination_company_id,
            destination_location_id=location_id,
            destination_contact_id=contact_id,
            auto_map_location=auto_map_location,
            copy_udfs=not skip_udfs,
            copy_attachments=not skip_attachments,
            copy_notes=not skip_notes,
            copy_note_attachments=not skip_note_attachments,
            **_request_options(
                config,
                dry_run,
                idempotency_key,
                keep_source_active,
                _audit_notes(
                    ConfigurationItemMoveStrategy,
                    no_audit_notes,
                    source_audit_note,
                    destination_audit_note,
                ),
                partial_failure,
                oversize_policy,
                masked_field_policy,
            ),
        )
    except ValueError as e:
        _fail(ctx, f'Invalid request: {e}', as_json)

    _execute(
        ctx,
        config,
        lambda engine: engine.move_configuration_item(request),
        'Configuration item move',
        as_json,
    )


@cli.command('transfer-ownership')
@click.argument('source_resource_id', type=int)
@click.argument('destination_resource_id', type=int)
@click.option('--due-before', default=None, help='YYYY-MM-DD (inclusive) or ISO-8601 datetime')
@click.option('--exclude-no-due-date', is_flag=True, help='Skip items without a due date')
@click.option('--include-closed', is_flag=True, help='Do not restrict to open or active items')
@click.option('--skip-tickets', is_flag=True)
@click.option('--skip-tasks', is_flag=True)
@click.option('--skip-projects', is_flag=True)
@click.option('--skip-task-secondary-resources', is_flag=True)
@click.option('--include-service-calls', is_flag=True)
@click.option('--include-appointments', is_flag=True)
@click.option('--include-companies', is_flag=True)
@click.option('--include-opportunities', is_flag=True)
@click.option(
    '--ticket-assignment-mode',
    type=click.Choice([m.value for m in TicketAssignmentMode]),
    default=TicketAssignmentMode.PRIMARY_ONLY.value,
)
@click.option('--skip-project-lead', is_flag=True, help='Leave project leads unchanged')
@click.option('--company-id', 'company_ids', type=int, multiple=True, help='Company allowlist')
@click.option('--status-label', 'status_labels', multiple=True, help='Allowed status label')
@click.option('--status-value', 'status_values', type=int, multiple=True, help='Allowed status value')
@click.option('--max-items-per-entity', type=int, default=None)
@click.option('--max-companies', type=int, default=None)
@click.option('--no-audit-notes', is_flag=True, help='Write no audit notes')
@click.option('--audit-note-template', default=None, help='Audit note template')
@click.option('--dry-run', is_flag=True, help='Plan only; make no changes')
@click.option('--idempotency-key', default=None, help='Label used as the run id')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_context
def transfer_ownership(
    ctx: click.Context,
    source_resource_id: int,
    destination_resource_id: int,
    due_before: Optional[str],
    exclude_no_due_date: bool,
    include_closed: bool,
    skip_tickets: bool,
    skip_tasks: bool,
    skip_projects: bool,
    skip_task_secondary_resources: bool,
    include_service_calls: bool,
    include_appointments: bool,
    include_companies: bool,
    include_opportunities: bool,
    ticket_assignment_mode: str,
    skip_project_lead: bool,
    company_ids: Tuple[int, ...],
    status_labels: Tuple[str, ...],
    status_values: Tuple[int, ...],
    max_items_per_entity: Optional[int],
    max_companies: Optional[int],
    no_audit_notes: bool,
    audit_note_template: Optional[str],
    dry_run: bool,
    idempotency_key: Optional[str],
    as_json: bool,
) -> None:
    """Reassign a resource's open work to another resource."""
    config = _prepare(ctx, as_json)
    options: Dict[str, Any] = {}
    if audit_note_template is not None:
        options['audit_note_template'] = audit_note_template
    try:
        request = OwnershipTransferRequest(
            source_resource_id=source_resource_id,
            destination_resource_id=destination_resource_id,
            dry_run=dry_run,
            idempotency_key=idempotency_key,
            due_before=due_before,
            include_items_with_no_due_date=not exclude_no_due_date,
            only_open_active=not include_closed,
            include_tickets=not skip_tickets,
            include_tasks=not skip_tasks,
            include_projects=not skip_projects,
            include_task_secondary_resources=not skip_task_secondary_resources,
            include_service_call_assignments=include_service_calls,
            include_appointments=include_appointments,
            include_companies=include_companies,
            include_opportunities=include_opportunities,
            ticket_assignment_mode=ticket_assignment_mode,
            project_includes_lead=not skip_project_lead,
            max_items_per_entity=max_items_per_entity or config.migration.max_items_per_entity,
            max_companies=max_companies or config.migration.max_companies,
            company_ids=list(company_ids),
            status_allowlist_by_label=list(status_labels),
            status_allowlist_by_value=list(status_values),
            add_audit_notes=not no_audit_notes,
            retry_policy=config.migration.retry,
            **options,
        )
    except ValueError as e:
        _fail(ctx, f'Invalid request: {e}', as_json)

    _execute(
        ctx,
        config,
        lambda engine: engine.transfer_ownership(request),
        'Ownership transfer',
        as_json,
    )


def _prepare(ctx: click.Context, as_json: bool) -> Config:
    try:
        config = _load_config(ctx)
    except Exception as e:
        _fail(ctx, f'Failed to load configuration: {e}', as_json)
    _setup_logging_with_config(ctx, config)
    return config


def _fail(ctx: click.Context, message: str, as_json: bool, report: Optional[Dict[str, Any]] = None) -> None:
    if as_json:
        click.echo(json.dumps({'error': message, 'report': report or {}}, indent=2, default=str))
    else:
        console.print(f'[red]✗[/red] {message}')
        if report:
            _display_report(report)
        if ctx.obj.get('verbose'):
            console.print_exception()
    sys.exit(1)


def _execute(ctx: click.Context, config: Config, operation, title: str, as_json: bool) -> None:
    """Run one workflow on a fresh engine and print its report."""
    try:
        with MigrationEngine(config) as engine:
            report = asyncio.run(_run_with_progress(operation(engine), title, as_json))
    except MigrationError as e:
        _fail(ctx, f'{title} failed: {e}', as_json, e.report)
    except Exception as e:
        _fail(ctx, f'{title} failed: {e}', as_json)

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    label = 'planned' if report.get('dryRun') else 'completed'
    console.print(f'[green]✓[/green] {title} {label} (run {report.get("runId")})')
    _display_report(report)


async def _run_with_progress(coro, title: str, quiet: bool) -> Dict[str, Any]:
    if quiet:
        return await coro
    with Progress(
        SpinnerColumn(),
        TextColumn('[progress.description]{task.description}'),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(f'[blue]{title} in progress...', total=None)
        return await coro


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        if not Path(config_path).exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')
        return Config.from_file(config_path)

    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return Config.from_file(path)

    try:
        return Config.from_env()
    except ValueError:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run "psa-migrate init" to create one.'
        )


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    verbose = ctx.obj.get('verbose', False)
    log_level = 'DEBUG' if verbose else config.logging.level
    setup_logging(level=log_level, log_file=config.logging.file, log_format=config.logging.format)


def _display_report(report: Dict[str, Any]) -> None:
    """Display a run report."""
    table = Table(title=f'{report.get("workflow", "Run")} {report.get("state", "")}'.strip())
    table.add_column('Class', style='cyan')
    table.add_column('Planned', style='blue')
    table.add_column('Copied', style='green')
    table.add_column('Updated', style='green')
    table.add_column('Failed', style='red')
    table.add_column('Skipped', style='yellow')

    for name, counts in sorted((report.get('counters') or {}).items()):
        table.add_row(
            name,
            str(counts.get('planned', 0)),
            str(counts.get('copied', 0)),
            str(counts.get('updated', 0)),
            str(counts.get('failed', 0)),
            str(counts.get('skipped', 0)),
        )
    console.print(table)

    if report.get('destinationId') and report.get('workflow') != 'ownership-transfer':
        console.print(f'[blue]Destination ID:[/blue] {report["destinationId"]}')
    total_ms = (report.get('latencyPerPhase') or {}).get('totalMs')
    if total_ms is not None:
        console.print(f'[blue]Duration:[/blue] {total_ms} ms')

    status = report.get('status') or {}
    warnings = status.get('warnings') or []
    if warnings:
        console.print(f'\n[yellow]Warnings ({len(warnings)}):[/yellow]')
        for warning in warnings[:10]:
            console.print(f'  • {warning}')
        if len(warnings) > 10:
            console.print(f'  ... and {len(warnings) - 10} more warnings')

    failures = report.get('failures') or []
    if failures:
        console.print(f'\n[red]Failures ({len(failures)}):[/red]')
        for failure in failures[:10]:
            retry = ' (retryable)' if failure.get('retryable') else ''
            console.print(
                f'  • {failure.get("entityType")} {failure.get("id")}: {failure.get("error")}{retry}'
            )
        if len(failures) > 10:
            console.print(f'  ... and {len(failures) - 10} more failures')


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Interrupted by user[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
