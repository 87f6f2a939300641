"""Phase timing and the caller-facing run report."""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator

from ..models.run import Run


class PhaseTimer:
    """Records wall-clock milliseconds per named phase into the run."""

    def __init__(self, run: Run, clock: Callable[[], float] = time.monotonic):
        self.run = run
        self._clock = clock
        self._started = clock()

    @contextmanager
    def phase(self, name: str) -> Iterator[None]:
        start = self._clock()
        try:
            yield
        finally:
            elapsed = max(0, int(round((self._clock() - start) * 1000)))
            key = f'{name}Ms'
            self.run.latency_per_phase[key] = (
                self.run.latency_per_phase.get(key, 0) + elapsed
            )

    def finish(self) -> None:
        self.run.latency_per_phase['totalMs'] = max(
            0, int(round((self._clock() - self._started) * 1000))
        )


def build_report(run: Run) -> Dict[str, Any]:
    """Render a run as the camelCase report handed back to callers."""
    report: Dict[str, Any] = {
        'runId': run.run_id,
        'workflow': run.workflow,
        'dryRun': run.dry_run,
        'state': run.state.value,
        'sourceId': run.source_id,
        'destinationId': run.destination_id,
        'mapping': {k: dict(v) for k, v in run.mapping.items()},
        'counters': {k: v.model_dump() for k, v in run.counters.items()},
        'status': {
            'warnings': list(run.warnings),
            'skipped': {k: list(v) for k, v in run.skipped.items()},
            'sourceDeactivated': run.source_deactivated,
            'auditNotesCreated': run.audit_notes_created,
        },
        'latencyPerPhase': dict(run.latency_per_phase),
        'preflight': dict(run.preflight),
        'mutationLog': [
            {
                'sequence': m.sequence,
                'kind': m.kind.value,
                'entity': m.entity,
                'id': m.entity_id,
                'detail': m.detail,
            }
            for m in run.mutation_log
        ],
    }
    if run.failures:
        report['failures'] = list(run.failures)
    if run.plan is not None:
        report['plan'] = run.plan
    report.update(run.summary)
    return report
