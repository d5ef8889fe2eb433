"""Pydantic schemas for service and API payloads."""

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


# ── Lists ────────────────────────────────────────────────
class ListCreate(BaseModel):
    name: str
    list_type: str
    round_number: Optional[int] = Field(default=None, ge=1)
    external_list_id: Optional[str] = None
    description: str = ""


class ListUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    external_list_id: Optional[str] = None


class ListOut(BaseModel):
    id: str
    name: str
    list_type: str
    round_number: Optional[int] = None
    external_list_id: Optional[str] = None
    description: str = ""
    contact_count: int = 0
    bounce_rate: Optional[float] = None
    delivery_rate: Optional[float] = None
    health_score: Optional[float] = None
    last_synced_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime

    model_config = {"from_attributes": True}


class ListMetadata(BaseModel):
    """Cached view of a list. Safe to serve stale; never used for membership decisions."""

    list_id: str
    name: str
    list_type: str
    round_number: Optional[int] = None
    contact_count: int = 0
    bounce_rate: Optional[float] = None
    delivery_rate: Optional[float] = None
    health_score: Optional[float] = None
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, contact_list):
        return cls(
            list_id=contact_list.id,
            name=contact_list.name,
            list_type=contact_list.list_type,
            round_number=contact_list.round_number,
            contact_count=contact_list.contact_count or 0,
            bounce_rate=contact_list.bounce_rate,
            delivery_rate=contact_list.delivery_rate,
            health_score=contact_list.health_score,
            last_synced_at=contact_list.last_synced_at,
        )


# ── Contacts ─────────────────────────────────────────────
class ContactCreate(BaseModel):
    email: EmailStr
    name: str = ""
    first_name: str = ""
    last_name: str = ""
    external_id: Optional[str] = None
    properties: dict = Field(default_factory=dict)


class ContactUpdate(BaseModel):
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: Optional[str] = None
    properties: Optional[dict] = None


class ContactOut(BaseModel):
    id: str
    email: str
    external_id: Optional[str] = None
    name: str = ""
    first_name: str = ""
    last_name: str = ""
    properties: dict = Field(default_factory=dict)
    status: str
    bounce_count: int = 0
    last_bounce_date: Optional[datetime] = None
    last_bounce_type: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, contact):
        props = contact.properties
        if isinstance(props, str):
            try:
                props = json.loads(props)
            except (json.JSONDecodeError, TypeError):
                props = {}
        return cls(
            id=contact.id,
            email=contact.email,
            external_id=contact.external_id,
            name=contact.name or "",
            first_name=contact.first_name or "",
            last_name=contact.last_name or "",
            properties=props or {},
            status=contact.status,
            bounce_count=contact.bounce_count or 0,
            last_bounce_date=contact.last_bounce_date,
            last_bounce_type=contact.last_bounce_type,
            created_at=contact.created_at,
        )


class ListMember(BaseModel):
    contact: ContactOut
    position: int
    added_at: datetime


class ListContactsPage(BaseModel):
    members: list[ListMember]
    total: int
    page: int
    page_size: int
    total_pages: int


class MembershipOut(BaseModel):
    id: str
    contact_id: str
    list_id: str
    position: int
    is_active: bool
    added_at: datetime
    removed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AddToListRequest(BaseModel):
    contact_id: str
    position: Optional[int] = Field(default=None, ge=1)


# ── Bulk import ──────────────────────────────────────────
class ImportRecord(BaseModel):
    email: str  # validated per record by the service so one bad row never rejects the batch
    name: str = ""
    first_name: str = ""
    last_name: str = ""
    external_id: Optional[str] = None
    properties: dict = Field(default_factory=dict)


class BulkImportRequest(BaseModel):
    records: list[ImportRecord]


class ImportRecordError(BaseModel):
    email: str
    error: str


class BulkImportResult(BaseModel):
    success: int = 0
    failed: int = 0
    errors: list[ImportRecordError] = Field(default_factory=list)
    contact_ids: list[str] = Field(default_factory=list)


# ── Suppression ──────────────────────────────────────────
class SuppressRequest(BaseModel):
    contact_id: str
    reason: str
    suppressed_by: str
    ai_rationale: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    source_campaign_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class BulkSuppressRequest(BaseModel):
    entries: list[SuppressRequest]


class BulkSuppressionError(BaseModel):
    contact_id: str
    error: str


class BulkSuppressionResult(BaseModel):
    success: int = 0
    failed: int = 0
    skipped: int = 0  # already had an active suppression entry
    errors: list[BulkSuppressionError] = Field(default_factory=list)


class ReactivateRequest(BaseModel):
    reactivated_by: str
    reason: Optional[str] = None


class SuppressionCheck(BaseModel):
    is_suppressed: bool
    reason: Optional[str] = None
    suppressed_at: Optional[datetime] = None
    suppressed_by: Optional[str] = None


class SuppressionEntryOut(BaseModel):
    id: str
    contact_id: str
    reason: str
    suppressed_by: str
    ai_rationale: Optional[str] = None
    confidence: Optional[float] = None
    source_campaign_id: Optional[str] = None
    is_active: bool
    suppressed_at: datetime
    reactivated_at: Optional[datetime] = None
    reactivated_by: Optional[str] = None

    model_config = {"from_attributes": True}


# ── Delivery provider facts ──────────────────────────────
class BounceEvent(BaseModel):
    email: str
    contact_external_id: Optional[str] = None
    bounce_type: str  # hard|soft|spam
    bounced_at: datetime


class BounceFact(BaseModel):
    """A bounce event enriched with the stored contact's counters."""

    contact_id: str
    email: str
    bounce_type: str
    bounce_count: int
    last_bounce_date: datetime
    first_bounce_date: Optional[datetime] = None


class ProviderListStatistics(BaseModel):
    total_contacts: int = 0
    recent_bounces: int = 0
    delivered: Optional[int] = None
    sent: Optional[int] = None
    list_health: Optional[float] = None  # 0-100


# ── Recommendation service ──────────────────────────────
class SuppressionPlanRequest(BaseModel):
    campaign_name: str = ""
    list_name: str
    bounces: list[BounceFact]
    current_delivery_rate: float = Field(ge=0, le=1)


class SuppressionRecommendation(BaseModel):
    contact_id: str
    email: str = ""
    reason: str
    rationale: str = ""
    confidence: float = Field(ge=0, le=1)
    priority: str = "medium"  # low|medium|high|critical


class SuppressionPlan(BaseModel):
    total_bounces: int = 0
    suppressions: list[SuppressionRecommendation] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)
    summary: str = ""


class RoundListState(BaseModel):
    list_id: str
    list_name: str = ""
    round_number: int
    contact_count: int
    contact_ids: list[str] = Field(default_factory=list)  # active members in FIFO order


class RebalanceRequest(BaseModel):
    lists: list[RoundListState]
    total_contacts: int
    preserve_fifo: bool = True


class ContactMove(BaseModel):
    contact_id: str
    from_list_id: str
    to_list_id: str
    reason: str = ""


class RebalancingPlan(BaseModel):
    is_balanced: bool
    moves: list[ContactMove] = Field(default_factory=list)
    balance_score: float = Field(default=100.0, ge=0, le=100)
    summary: str = ""
    target_per_list: int = 0
    expected_counts: dict[int, int] = Field(default_factory=dict)


# ── List health ──────────────────────────────────────────
class ListHealthMetrics(BaseModel):
    """Rates are fractions 0-1."""

    list_name: str
    contact_count: int = 0
    active_contact_count: int = 0
    bounce_rate: float = Field(default=0.0, ge=0, le=1)
    hard_bounce_rate: float = Field(default=0.0, ge=0, le=1)
    soft_bounce_rate: float = Field(default=0.0, ge=0, le=1)
    spam_rate: float = Field(default=0.0, ge=0, le=1)
    delivery_rate: float = Field(default=1.0, ge=0, le=1)


class HealthRiskFactor(BaseModel):
    factor: str
    severity: str  # low|medium|high|critical
    description: str = ""


class HealthRecommendation(BaseModel):
    priority: str  # low|medium|high|critical
    action: str
    expected_impact: str = ""


class ListHealthAssessment(BaseModel):
    health_score: float = Field(ge=0, le=100)
    health_grade: str  # excellent|good|fair|poor|critical
    summary: str = ""
    risk_factors: list[HealthRiskFactor] = Field(default_factory=list)
    recommendations: list[HealthRecommendation] = Field(default_factory=list)
    trend_assessment: str = ""
    urgency: str = "low"


# ── Maintenance ──────────────────────────────────────────
class MaintenanceRequest(BaseModel):
    campaign_schedule_id: str
    list_id: str
    campaign_name: str
    round_number: int = Field(ge=1)


class MaintenanceResult(BaseModel):
    success: bool
    maintenance_log_id: Optional[str] = None
    contacts_suppressed: int = 0
    contacts_rebalanced: int = 0
    summary: str = ""
    error: Optional[str] = None


class MaintenanceLogOut(BaseModel):
    id: str
    campaign_schedule_id: str
    list_id: str
    maintenance_type: str
    status: str
    stage: str
    contacts_suppressed: int
    contacts_skipped: int
    contacts_rebalanced: int
    suppression_plan: Optional[dict] = None
    rebalancing_plan: Optional[dict] = None
    ai_recommendation: str = ""
    ai_confidence: float = 0.0
    stage_errors: list[dict] = Field(default_factory=list)
    error_message: str = ""
    duration_ms: int = 0
    executed_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, log):
        def _load(raw, default):
            if not raw:
                return default
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                return default

        return cls(
            id=log.id,
            campaign_schedule_id=log.campaign_schedule_id,
            list_id=log.list_id,
            maintenance_type=log.maintenance_type,
            status=log.status,
            stage=log.stage,
            contacts_suppressed=log.contacts_suppressed or 0,
            contacts_skipped=log.contacts_skipped or 0,
            contacts_rebalanced=log.contacts_rebalanced or 0,
            suppression_plan=_load(log.suppression_plan, None),
            rebalancing_plan=_load(log.rebalancing_plan, None),
            ai_recommendation=log.ai_recommendation or "",
            ai_confidence=log.ai_confidence or 0.0,
            stage_errors=_load(log.stage_errors, []),
            error_message=log.error_message or "",
            duration_ms=log.duration_ms or 0,
            executed_at=log.executed_at,
            completed_at=log.completed_at,
        )
