"""Maintenance run log: one row per post-campaign orchestrator run."""

from enum import Enum

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text

from sendlists.database import Base
from sendlists.models import new_uuid, utcnow


class MaintenanceStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MaintenanceStage(str, Enum):
    CREATED = "created"
    FETCHING_BOUNCES = "fetching_bounces"
    PLANNING_SUPPRESSION = "planning_suppression"
    SUPPRESSING = "suppressing"
    PLANNING_REBALANCE = "planning_rebalance"
    REBALANCING = "rebalancing"
    COMPLETED = "completed"
    FAILED = "failed"


class MaintenanceAction(str, Enum):
    POST_CAMPAIGN_CLEANUP = "post_campaign_cleanup"


class ListMaintenanceLog(Base):
    """Audit trail for a maintenance run. Created before any side effect and never deleted."""

    __tablename__ = "list_maintenance_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    campaign_schedule_id = Column(String(64), nullable=False, index=True)
    list_id = Column(String(36), ForeignKey("contact_lists.id"), nullable=False, index=True)
    maintenance_type = Column(String(40), default=MaintenanceAction.POST_CAMPAIGN_CLEANUP.value)
    status = Column(String(20), default=MaintenanceStatus.IN_PROGRESS.value)
    stage = Column(String(30), default=MaintenanceStage.CREATED.value)
    contacts_suppressed = Column(Integer, default=0)
    contacts_skipped = Column(Integer, default=0)
    contacts_rebalanced = Column(Integer, default=0)
    suppression_plan = Column(Text, nullable=True)  # JSON
    rebalancing_plan = Column(Text, nullable=True)  # JSON
    ai_recommendation = Column(Text, default="")
    ai_confidence = Column(Float, default=0.0)
    stage_errors = Column(Text, default="[]")  # JSON: [{stage, error}]
    error_message = Column(Text, default="")
    duration_ms = Column(Integer, default=0)
    executed_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
