"""Migration request and policy models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_MAX_SINGLE_ITEM_BYTES = 6 * 1024 * 1024
DEFAULT_MAX_BYTES_PER_WINDOW = 10_000_000
DEFAULT_WINDOW_SECONDS = 300.0


class OversizePolicy(str, Enum):
    """What to do with an attachment larger than the single-item limit."""

    SKIP_AND_NOTE = 'skip+note'
    FAIL = 'fail'


class MaskedFieldPolicy(str, Enum):
    """What to do with values the API returns redacted."""

    OMIT = 'omit'
    FAIL = 'fail'


class PartialFailureStrategy(str, Enum):
    """Compensation applied to a destination created by a failed run."""

    DEACTIVATE_DESTINATION = 'deactivateDestination'
    LEAVE_ACTIVE_WITH_NOTE = 'leaveActiveWithNote'


class DuplicatePolicy(str, Enum):
    """Behaviour when an equivalent record already exists at the destination."""

    FAIL = 'fail'
    SKIP = 'skip'


class TicketAssignmentMode(str, Enum):
    """Which ticket assignments an ownership transfer moves."""

    PRIMARY_ONLY = 'primaryOnly'
    PRIMARY_AND_SECONDARY = 'primaryAndSecondary'


class RetryPolicy(BaseModel):
    """Backoff settings for transient API failures."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, description='Retries after the first attempt')
    base_delay_ms: int = Field(default=500, description='Initial backoff delay')
    jitter: bool = Field(default=True, description='Add up to 30% random delay')

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        """Validate retry count is not negative."""
        if v < 0:
            raise ValueError('max_retries must not be negative')
        return v

    @field_validator('base_delay_ms')
    @classmethod
    def validate_base_delay(cls, v):
        """Validate base delay has a sane floor."""
        if v < 50:
            raise ValueError('base_delay_ms must be at least 50')
        return v


class ThrottlePolicy(BaseModel):
    """Byte budget for uploads over a sliding window."""

    model_config = ConfigDict(frozen=True)

    max_bytes_per_window: int = Field(
        default=DEFAULT_MAX_BYTES_PER_WINDOW,
        description='Upload byte budget per window',
    )
    max_single_item_bytes: int = Field(
        default=DEFAULT_MAX_SINGLE_ITEM_BYTES,
        description='Largest single upload accepted',
    )
    window_seconds: float = Field(
        default=DEFAULT_WINDOW_SECONDS, description='Sliding window length'
    )

    @field_validator('max_bytes_per_window', 'max_single_item_bytes')
    @classmethod
    def validate_positive(cls, v):
        """Validate byte limits are positive."""
        if v < 1:
            raise ValueError('Byte limits must be positive')
        return v

    @field_validator('window_seconds')
    @classmethod
    def validate_window(cls, v):
        """Validate window length is positive."""
        if v <= 0:
            raise ValueError('window_seconds must be positive')
        return v

    @model_validator(mode='after')
    def validate_item_fits_window(self):
        """An admitted item must always fit into an empty window."""
        if self.max_single_item_bytes > self.max_bytes_per_window:
            raise ValueError(
                'max_single_item_bytes must not exceed max_bytes_per_window'
            )
        return self


class MigrationRequest(BaseModel):
    """Options shared by every migration workflow.

    Requests are frozen: a run never mutates its input.
    """

    model_config = ConfigDict(frozen=True)

    dry_run: bool = Field(default=False, description='Plan only, no writes')
    idempotency_key: Optional[str] = Field(
        default=None, description='Caller label reused as the run id'
    )

    deactivate_source: bool = Field(
        default=True, description='Deactivate the source after a successful move'
    )
    source_audit_note: str = Field(default='', description='Source audit template')
    destination_audit_note: str = Field(
        default='', description='Destination audit template'
    )

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    throttle_policy: ThrottlePolicy = Field(default_factory=ThrottlePolicy)
    oversize_policy: OversizePolicy = Field(default=OversizePolicy.SKIP_AND_NOTE)
    masked_field_policy: MaskedFieldPolicy = Field(default=MaskedFieldPolicy.OMIT)
    partial_failure_strategy: PartialFailureStrategy = Field(
        default=PartialFailureStrategy.DEACTIVATE_DESTINATION
    )

    @field_validator('idempotency_key')
    @classmethod
    def validate_idempotency_key(cls, v):
        """Treat a blank key as absent."""
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @field_validator('source_audit_note', 'destination_audit_note')
    @classmethod
    def strip_templates(cls, v):
        """Strip surrounding whitespace from audit templates."""
        return v.strip()


def _require_positive(value: Optional[int], label: str) -> Optional[int]:
    if value is not None and value <= 0:
        raise ValueError(f'{label} must be a positive integer')
    return value


class ContactMoveRequest(MigrationRequest):
    """Move a contact to another company."""

    source_contact_id: int = Field(..., description='Contact to move')
    destination_company_id: int = Field(..., description='Receiving company')
    destination_location_id: Optional[int] = Field(
        default=None, description='Explicit destination location'
    )
    auto_map_location: bool = Field(
        default=True,
        description='Resolve the destination location by the source location name',
    )

    copy_contact_groups: bool = Field(default=True)
    copy_company_notes: bool = Field(default=True)
    copy_note_attachments: bool = Field(default=True)

    duplicate_policy: DuplicatePolicy = Field(default=DuplicatePolicy.FAIL)

    @field_validator('source_contact_id', 'destination_company_id')
    @classmethod
    def validate_ids(cls, v, info):
        """Validate required identifiers."""
        return _require_positive(v, info.field_name)

    @field_validator('destination_location_id')
    @classmethod
    def validate_location(cls, v):
        """Validate optional location identifier."""
        return _require_positive(v, 'destination_location_id')


class ConfigurationItemMoveRequest(MigrationRequest):
    """Move a configuration item to another company."""

    source_configuration_item_id: int = Field(..., description='CI to move')
    destination_company_id: int = Field(..., description='Receiving company')
    destination_location_id: Optional[int] = Field(default=None)
    destination_contact_id: Optional[int] = Field(default=None)
    auto_map_location: bool = Field(default=False)

    copy_udfs: bool = Field(default=True)
    copy_attachments: bool = Field(default=True)
    copy_notes: bool = Field(default=True)
    copy_note_attachments: bool = Field(default=True)

    @field_validator('source_configuration_item_id', 'destination_company_id')
    @classmethod
    def validate_ids(cls, v, info):
        """Validate required identifiers."""
        return _require_positive(v, info.field_name)

    @field_validator('destination_location_id', 'destination_contact_id')
    @classmethod
    def validate_optional_ids(cls, v, info):
        """Validate optional identifiers."""
        return _require_positive(v, info.field_name)


class OwnershipTransferRequest(BaseModel):
    """Reassign a resource's open work to another resource."""

    model_config = ConfigDict(frozen=True)

    source_resource_id: int = Field(..., description='Resource giving up work')
    destination_resource_id: int = Field(..., description='Receiving resource')

    dry_run: bool = Field(default=False)
    idempotency_key: Optional[str] = Field(default=None)

    due_before: Optional[str] = Field(
        default=None, description='YYYY-MM-DD (inclusive) or ISO-8601 datetime'
    )
    include_items_with_no_due_date: bool = Field(default=True)
    only_open_active: bool = Field(default=True)

    include_tickets: bool = Field(default=True)
    include_tasks: bool = Field(default=True)
    include_projects: bool = Field(default=True)
    include_task_secondary_resources: bool = Field(default=True)
    include_service_call_assignments: bool = Field(default=False)
    include_appointments: bool = Field(default=False)
    include_companies: bool = Field(default=False)
    include_opportunities: bool = Field(default=False)

    ticket_assignment_mode: TicketAssignmentMode = Field(
        default=TicketAssignmentMode.PRIMARY_ONLY
    )
    project_includes_lead: bool = Field(default=True)

    max_items_per_entity: int = Field(default=500)
    max_companies: int = Field(default=200)
    company_ids: List[int] = Field(default_factory=list)
    status_allowlist_by_label: List[str] = Field(default_factory=list)
    status_allowlist_by_value: List[int] = Field(default_factory=list)

    add_audit_notes: bool = Field(default=True)
    audit_note_template: str = Field(
        default=(
            'Ownership transferred from {sourceResourceName} '
            'to {destinationResourceName} on {date}.'
        )
    )

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator('source_resource_id', 'destination_resource_id')
    @classmethod
    def validate_ids(cls, v, info):
        """Validate resource identifiers."""
        return _require_positive(v, info.field_name)

    @field_validator('max_items_per_entity', 'max_companies')
    @classmethod
    def validate_ceilings(cls, v):
        """Validate discovery ceilings are positive."""
        if v <= 0:
            raise ValueError('Discovery ceilings must be positive')
        return v
