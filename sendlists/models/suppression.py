"""Suppression history: append-only audit of every suppression decision."""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Text

from sendlists.database import Base
from sendlists.models import new_uuid, utcnow


class SuppressionReason:
    HARD_BOUNCE = "hard_bounce"
    SOFT_BOUNCE_THRESHOLD = "soft_bounce_threshold"
    SPAM_COMPLAINT = "spam_complaint"
    MANUAL = "manual"
    AI_RECOMMENDED = "ai_recommended"


PERMANENT_REASONS = {SuppressionReason.HARD_BOUNCE, SuppressionReason.SPAM_COMPLAINT}


class SuppressionHistoryEntry(Base):
    """One suppression decision. Reactivation flips is_active; rows are never deleted."""

    __tablename__ = "suppression_history"

    id = Column(String(36), primary_key=True, default=new_uuid)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    reason = Column(String(100), nullable=False)  # hard_bounce|soft_bounce_threshold|spam_complaint|manual|ai_recommended
    suppressed_by = Column(String(100), nullable=False)  # "ai", "system" or an operator id
    ai_rationale = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)  # 0-1
    source_campaign_id = Column(String(64), nullable=True)
    metadata_ = Column("metadata", Text, default="{}")
    is_active = Column(Boolean, default=True, index=True)
    suppressed_at = Column(DateTime, default=utcnow)
    reactivated_at = Column(DateTime, nullable=True)
    reactivated_by = Column(String(100), nullable=True)
