"""Audit trail notes, note templates and the migration header."""

import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from ..models.run import MutationKind, Run
from .retry import RetryExecutor

DEFAULT_TRUNCATE_LENGTH = 32000

_PLACEHOLDER = re.compile(r'\{\{(\w+)\}\}|\{(\w+)\}')


def resolve_template(template: str, variables: Dict[str, Any]) -> str:
    """Substitute ``{name}`` (or ``{{name}}``) placeholders.

    Unknown placeholders are left as written; None renders as an empty string.
    """

    def _replace(match: 're.Match[str]') -> str:
        name = match.group(1) or match.group(2)
        if name not in variables:
            return match.group(0)
        value = variables[name]
        return '' if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)


def utc_now_iso(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def build_migration_header(
    source_label: str,
    source_id: int,
    scope_label: str,
    scope_id: int,
    now: Optional[datetime] = None,
) -> str:
    """Provenance line prefixed to copied content."""
    return (
        f'[MIGRATED] From {source_label} {source_id} ({scope_label} {scope_id}) '
        f'on {utc_now_iso(now)} by psa-migrate'
    )


def truncate_text(value: str, limit: int = DEFAULT_TRUNCATE_LENGTH) -> str:
    """Cut ``value`` to ``limit`` characters, ending in an ellipsis."""
    if len(value) <= limit:
        return value
    return value[: limit - 3] + '...'


class AuditTrailWriter:
    """Best-effort note writer: failures become run warnings."""

    def __init__(self, run: Run, executor: RetryExecutor):
        self.run = run
        self.executor = executor
        self.logger = logger.bind(component='AuditTrailWriter')

    async def write(
        self,
        label: str,
        create_note: Callable[[], Awaitable[int]],
        entity: str = 'note',
    ) -> Optional[int]:
        """Create one audit note; returns its id, or None after a warning."""
        try:
            note_id = await self.executor.call(create_note, f'{label} audit note')
        except Exception as e:
            message = f'Failed to create {label} audit note: {e}'
            self.logger.warning(message)
            self.run.warn(message)
            return None
        self.run.record_mutation(MutationKind.CREATE, entity, note_id, f'{label} audit note')
        self.logger.info(f'Created {label} audit note {note_id}')
        return note_id
