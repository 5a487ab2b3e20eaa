"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

# Amounts are Decimal internally; the client expects JSON numbers.
Number = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

TimeEntrySourceName = Literal["timer", "manual", "calendar", "import"]


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str


class StatusResponse(BaseModel):
    """Bare acknowledgement for fire-and-forget operations."""

    status: str


# ============================================================================
# Time entry schemas
# ============================================================================


class IntervalSchema(BaseModel):
    start: datetime
    end: datetime | None = None


class IdleSuggestionSchema(BaseModel):
    idle_seconds: int
    idle_percent: float
    suggested_trim_seconds: int


class ProjectRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str


class TimeEntryResponse(BaseModel):
    """Schema for a time entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: UUID
    project_id: UUID | None = None
    task_id: UUID | None = None
    description: str | None = None
    start_ts: datetime
    end_ts: datetime | None = None
    duration_seconds: int | None = None
    billable: bool
    paused_intervals: list[IntervalSchema] = Field(default_factory=list)
    idle_suggestion: IdleSuggestionSchema | None = None
    idle_trim_applied_seconds: int = 0
    source: TimeEntrySourceName
    invoice_id: UUID | None = None
    created_at: datetime
    updated_at: datetime
    project: ProjectRef | None = None


class StartTimerRequest(BaseModel):
    project_id: UUID
    task_id: UUID | None = None
    billable: bool = True
    notes: str | None = None
    source: TimeEntrySourceName | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class TimerActionRequest(BaseModel):
    """Body of pause and resume."""

    time_entry_id: UUID


class StopTimerRequest(BaseModel):
    time_entry_id: UUID
    client_idle_intervals: list[IntervalSchema] | None = None
    accept_server_idle_trim: bool = False


class ApplyIdleTrimRequest(BaseModel):
    time_entry_id: UUID
    trim_seconds: int


class HeartbeatRequest(BaseModel):
    time_entry_id: UUID
    ts: datetime | None = None


class HeartbeatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    time_entry_id: UUID
    ts: datetime


class CreateManualEntryRequest(BaseModel):
    start_ts: datetime
    end_ts: datetime
    project_id: UUID
    task_id: UUID | None = None
    billable: bool = True
    notes: str | None = None
    allow_overlap: bool = False
    source: TimeEntrySourceName | None = None


class UpdateTimeEntryRequest(BaseModel):
    start_ts: datetime | None = None
    end_ts: datetime | None = None
    project_id: UUID | None = None
    task_id: UUID | None = None
    billable: bool | None = None
    notes: str | None = None
    allow_overlap: bool = False


class ListEntriesResponse(BaseModel):
    entries: list[TimeEntryResponse]
    total: int


class Adjustment(BaseModel):
    type: Literal["set_duration", "multiply", "add_seconds"]
    value: Decimal


class BulkAdjustRequest(BaseModel):
    entry_ids: list[UUID] = Field(min_length=1)
    adjustment: Adjustment
    reason: str | None = None


class BulkAdjustResponse(BaseModel):
    updated: int
    entries: list[TimeEntryResponse]


# ============================================================================
# Rate schemas
# ============================================================================


class RateCreate(BaseModel):
    scope: Literal["user", "project", "client", "default"]
    scope_id: UUID | None = None
    rate_type: Literal["billable", "cost", "internal"]
    currency: str
    hourly_rate: Decimal
    effective_from: datetime | None = None
    effective_to: datetime | None = None


class RateSupersede(BaseModel):
    hourly_rate: Decimal
    effective_from: datetime


class RateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    scope: str
    scope_id: UUID | None = None
    rate_type: str
    currency: str
    hourly_rate: Number
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    created_at: datetime
    updated_at: datetime
    created_by: UUID


class RateResolveResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    rate_type: str
    hourly_rate: Number
    source: str
    resolved_scope: str
    resolved_scope_id: UUID | None = None


# ============================================================================
# Financials schemas
# ============================================================================


class ProjectFinancialsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    currency: str
    revenue: Number
    freelancer_cost: Number
    expenses: Number
    profit: Number | None = None
    margin_percent: Number | None = None
    billable_hours: Number
    last_updated: datetime
    budget_amount: Number | None = None
    projected_end_date: date | None = None
    notes: dict[str, Any] = Field(default_factory=dict)


class MyProjectCostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    user_id: UUID
    start: datetime | None = None
    end: datetime | None = None
    hours: Number
    cost: Number
    currency: str


class ProjectUserCostItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_email: str
    hours: Number
    cost: Number
    currency: str


class ProjectUserCostsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    start: datetime | None = None
    end: datetime | None = None
    currency: str
    total_hours: Number
    total_cost: Number
    users: list[ProjectUserCostItem]


class LeaderboardRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    project_name: str
    currency: str
    revenue: Number
    cost: Number
    profit: Number
    margin_percent: Number | None = None
    billable_hours: Number


# ============================================================================
# Expense schemas
# ============================================================================


class ExpenseCreate(BaseModel):
    amount: Decimal
    currency: str
    category: str
    description: str
    receipt_url: str | None = None
    incurred_at: datetime | None = None
    billable: bool = True


class ExpenseUpdate(BaseModel):
    amount: Decimal | None = None
    currency: str | None = None
    category: str | None = None
    description: str | None = None
    receipt_url: str | None = None
    incurred_at: datetime | None = None
    billable: bool | None = None


class ExpenseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    organization_id: UUID
    amount: Number
    currency: str
    category: str
    description: str
    receipt_url: str | None = None
    billable: bool
    invoice_id: UUID | None = None
    created_at: datetime
    created_by: UUID


# ============================================================================
# Invoice schemas
# ============================================================================


class InvoiceDraftRequest(BaseModel):
    start: datetime | None = None
    end: datetime | None = None
    to_email: str | None = None
    note: str | None = None
    client_name: str | None = None
    client_email: str | None = None
    due_date: date | None = None
    send_now: bool = False


class InvoiceLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    description: str
    hours: Number
    rate: Number
    amount: Number


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    project_id: UUID
    project_name: str | None = None
    number: str
    status: str
    currency: str
    issue_date: date
    due_date: date | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    subtotal: Number
    tax_total: Number
    total: Number
    total_hours: Number | None = None
    note: str | None = None
    to_email: str | None = None
    client_name: str | None = None
    client_email: str | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    created_by: UUID
    created_at: datetime
    updated_at: datetime
    lines: list[InvoiceLineResponse]
    delivery_error: str | None = None


class MarkPaidRequest(BaseModel):
    paid_at: datetime | None = None


# ============================================================================
# Payout schemas
# ============================================================================


class PayoutCreate(BaseModel):
    freelancer_user_id: UUID
    project_id: UUID | None = None
    amount: Decimal
    currency: str
    payout_method: str
    scheduled_for: datetime | None = None
    metadata: dict[str, Any] | None = None


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    freelancer_user_id: UUID
    project_id: UUID | None = None
    amount: Number
    currency: str
    payout_method: str
    status: Literal["pending", "completed", "failed"]
    payout_reference: str | None = None
    scheduled_for: datetime | None = None
    paid_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime
    created_by: UUID
    payout_metadata: dict[str, Any] | None = None


class PayoutMarkCompletedRequest(BaseModel):
    payout_reference: str
    paid_at: datetime | None = None


class PayoutMarkFailedRequest(BaseModel):
    reason: str


class FreelancerFinanceSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    freelancer_user_id: UUID
    currency: str
    total_hours: Number
    total_cost: Number
    paid_total: Number
    pending_payout_total: Number
    due_total: Number
    over_paid: bool = False
    from_ts: datetime | None = None
    to_ts: datetime | None = None


# ============================================================================
# Alert schemas
# ============================================================================


class FinanceAlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    project_id: UUID | None = None
    subject_user_id: UUID | None = None
    alert_type: str
    severity: Literal["low", "medium", "high", "critical"]
    threshold: Number | None = None
    current_value: Number | None = None
    currency: str | None = None
    acknowledged: bool
    acknowledged_at: datetime | None = None
    created_at: datetime
    notes: str | None = None


class FinanceAlertAckRequest(BaseModel):
    notes: str | None = None
