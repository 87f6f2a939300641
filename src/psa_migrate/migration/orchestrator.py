"""Generic saga that drives a migration strategy through its states."""

from typing import Any, Dict, Optional

from loguru import logger

from ..models.request import PartialFailureStrategy
from ..models.run import MutationKind, Run, RunState, generate_run_id
from .audit import resolve_template
from .exceptions import MigrationError, MigrationFailedError
from .report import build_report
from .strategy import MigrationContext, MigrationSession, MigrationStrategy, PreflightResult


class MigrationOrchestrator:
    """Runs one strategy: preflight, plan, create, copy, audit, deactivate.

    Any error after the destination exists applies the partial-failure
    strategy before it is re-raised.
    """

    def __init__(self, context: MigrationContext):
        self.context = context
        self.logger = logger.bind(component='MigrationOrchestrator')

    def _new_session(self, strategy: MigrationStrategy) -> MigrationSession:
        request = strategy.request
        run = Run(
            run_id=generate_run_id(strategy.workflow, strategy.source_id, request.idempotency_key),
            workflow=strategy.workflow,
            dry_run=request.dry_run,
            source_id=strategy.source_id,
        )
        return MigrationSession(self.context, run, request)

    def _finish(
        self,
        strategy: MigrationStrategy,
        session: MigrationSession,
        preflight: Optional[PreflightResult],
    ) -> Dict[str, Any]:
        run = session.run
        if preflight is not None:
            run.preflight = dict(preflight.info)
        run.summary.update(strategy.summarize(session, run.destination_id))
        session.timer.finish()
        return build_report(run)

    async def execute(self, strategy: MigrationStrategy) -> Dict[str, Any]:
        """Execute a move and return its report.

        Raises:
            PreflightError: Before anything was written
            MigrationError: After writes began, with ``report`` attached
        """
        session = self._new_session(strategy)
        run = session.run
        request = strategy.request
        kind = strategy.entity_kind

        self.logger.info(
            f'Starting {strategy.workflow} run {run.run_id} for {kind} {strategy.source_id}'
            f'{" (dry run)" if request.dry_run else ""}'
        )

        with session.timer.phase('preflight'):
            preflight = await strategy.preflight(session)

        if preflight.skip_reason:
            self.logger.warning(preflight.skip_reason)
            run.skipped.setdefault(kind, []).append(str(strategy.source_id))
            run.warn(preflight.skip_reason)
            run.transition(RunState.DONE)
            return self._finish(strategy, session, preflight)

        with session.timer.phase('plan'):
            plan = await strategy.build_plan(session, preflight)

        if request.dry_run:
            run.plan = plan
            run.transition(RunState.DONE)
            self.logger.info(f'Dry run {run.run_id} planned; nothing was written')
            return self._finish(strategy, session, preflight)

        phase = 'create'
        try:
            with session.timer.phase('create'):
                destination_id = await strategy.create_destination(session, plan)
                run.destination_id = destination_id
                run.record_mutation(MutationKind.CREATE, kind, destination_id, 'destination')
                self.logger.info(f'Created destination {kind} {destination_id}')
                await strategy.verify_destination(session, destination_id)
            run.transition(RunState.CREATED)

            phase = 'copy'
            run.transition(RunState.SUB_RESOURCES_COPYING)
            await strategy.copy_sub_resources(session, preflight, plan, destination_id)

            phase = 'audit'
            with session.timer.phase('auditNotes'):
                run.audit_notes_created = await self._write_audit_notes(
                    strategy, session, preflight, destination_id
                )
            run.transition(RunState.AUDIT_WRITTEN)

            phase = 'deactivateSource'
            with session.timer.phase('deactivateSource'):
                if request.deactivate_source:
                    await self._deactivate_source(strategy, session, preflight)
            run.transition(RunState.SOURCE_COMPENSATED)
            run.transition(RunState.DONE)
        except Exception as e:
            run.transition(RunState.FAILED)
            self.logger.error(f'Run {run.run_id} failed during {phase}: {e}')
            if run.destination_id is not None:
                await self._compensate(strategy, session, run.destination_id, e)
            report = self._finish(strategy, session, preflight)
            if isinstance(e, MigrationError):
                e.report = report
                raise
            raise MigrationFailedError(
                f'{kind} migration failed: {e}',
                report=report,
                entity_kind=kind,
                entity_id=run.destination_id or strategy.source_id,
                phase=phase,
            ) from e

        self.logger.info(f'Run {run.run_id} completed: {kind} {strategy.source_id} -> {run.destination_id}')
        return self._finish(strategy, session, preflight)

    async def _write_audit_notes(
        self,
        strategy: MigrationStrategy,
        session: MigrationSession,
        preflight: PreflightResult,
        destination_id: int,
    ) -> bool:
        request = strategy.request
        if not request.source_audit_note and not request.destination_audit_note:
            return True

        variables = strategy.audit_variables(session, preflight, destination_id)
        complete = True
        if request.source_audit_note:
            text = resolve_template(request.source_audit_note, variables)
            note_id = await session.audit.write(
                'source',
                lambda: strategy.write_source_audit_note(session, preflight, text),
            )
            complete = complete and note_id is not None
        if request.destination_audit_note:
            text = resolve_template(request.destination_audit_note, variables)
            note_id = await session.audit.write(
                'destination',
                lambda: strategy.write_destination_audit_note(
                    session, preflight, destination_id, text
                ),
            )
            complete = complete and note_id is not None

        if not complete:
            session.run.warn('One or more audit notes could not be created.')
        return complete

    async def _deactivate_source(
        self,
        strategy: MigrationStrategy,
        session: MigrationSession,
        preflight: PreflightResult,
    ) -> None:
        run = session.run
        label = f'{strategy.entity_kind} {strategy.source_id}'
        if not run.audit_notes_created:
            run.warn(
                f'Source {label} deactivation skipped because audit notes were not fully created.'
            )
            return
        try:
            await session.executor.call(
                lambda: strategy.deactivate_source(session, preflight),
                f'deactivate source {label}',
            )
        except Exception as e:
            message = (
                f'Failed to deactivate source {label}: {e}. '
                'Deactivate it manually; the move itself succeeded.'
            )
            self.logger.error(message)
            run.warn(message)
            return
        run.source_deactivated = True
        run.record_mutation(
            MutationKind.UPDATE, strategy.entity_kind, strategy.source_id, 'source deactivated'
        )
        self.logger.info(f'Deactivated source {label}')

    async def _compensate(
        self,
        strategy: MigrationStrategy,
        session: MigrationSession,
        destination_id: int,
        error: BaseException,
    ) -> None:
        """Apply the partial-failure strategy; its own errors become warnings."""
        run = session.run
        label = f'{strategy.entity_kind} {destination_id}'
        text = f'Partial migration run {run.run_id}: {error}'

        # note first: some entities reject notes once inactive
        try:
            note_id = await session.executor.call(
                lambda: strategy.write_partial_note(session, destination_id, text),
                f'partial migration note on {label}',
            )
            run.record_mutation(MutationKind.CREATE, 'note', note_id, 'partial migration note')
        except Exception as e:
            self._compensation_failed(run, e)

        if strategy.request.partial_failure_strategy != PartialFailureStrategy.DEACTIVATE_DESTINATION:
            run.warn(f'Destination {label} was left active after a partial migration failure.')
            return

        try:
            await session.executor.call(
                lambda: strategy.deactivate_destination(session, destination_id),
                f'deactivate destination {label}',
            )
        except Exception as e:
            self._compensation_failed(run, e)
            return
        run.record_mutation(
            MutationKind.UPDATE, strategy.entity_kind, destination_id, 'destination deactivated'
        )
        run.warn(f'Destination {label} was deactivated due to partial migration failure.')

    def _compensation_failed(self, run: Run, error: BaseException) -> None:
        message = f'Failed to apply partial failure strategy: {error}'
        self.logger.error(message)
        run.warn(message)
