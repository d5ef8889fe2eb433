"""SQLAlchemy models: portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from sendlists.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class ContactStatus(str, Enum):
    ACTIVE = "active"
    BOUNCED_SOFT = "bounced_soft"
    BOUNCED_HARD = "bounced_hard"
    SUPPRESSED = "suppressed"


# Status only moves forward along this order; reactivation is the one way back
STATUS_ORDER = {
    ContactStatus.ACTIVE.value: 0,
    ContactStatus.BOUNCED_SOFT.value: 1,
    ContactStatus.BOUNCED_HARD.value: 2,
    ContactStatus.SUPPRESSED.value: 3,
}


class ListType(str, Enum):
    MASTER = "master"
    CAMPAIGN_ROUND = "campaign_round"
    SUPPRESSION = "suppression"


# ── Contact ─────────────────────────────────────────────
class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=new_uuid)
    email = Column(String(320), unique=True, nullable=False, index=True)
    external_id = Column(String(64), nullable=True, index=True)  # delivery provider contact id
    name = Column(String(200), default="")
    first_name = Column(String(100), default="")
    last_name = Column(String(100), default="")
    properties = Column(Text, default="{}")  # JSON stored as text for portability
    status = Column(String(20), default=ContactStatus.ACTIVE.value, index=True)
    bounce_count = Column(Integer, default=0)
    last_bounce_date = Column(DateTime, nullable=True)
    last_bounce_type = Column(String(20), nullable=True)  # hard|soft|spam
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ── Contact list ────────────────────────────────────────
class ContactList(Base):
    """Named, typed send list. Count/rate columns are cached values, never membership truth."""

    __tablename__ = "contact_lists"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(300), nullable=False)
    list_type = Column(String(30), nullable=False, index=True)
    round_number = Column(Integer, nullable=True)  # set for campaign_round lists only
    external_list_id = Column(String(64), unique=True, nullable=True)
    description = Column(Text, default="")
    contact_count = Column(Integer, default=0)
    bounce_rate = Column(Float, nullable=True)  # fraction 0-1
    delivery_rate = Column(Float, nullable=True)  # fraction 0-1
    health_score = Column(Float, nullable=True)  # 0-100
    last_synced_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)
    retired_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ── List membership ─────────────────────────────────────
class ListMembership(Base):
    """FIFO link between a contact and a list. Removal is a soft delete; positions never move."""

    __tablename__ = "list_memberships"
    __table_args__ = (
        UniqueConstraint("contact_id", "list_id", name="uq_membership_contact_list"),
        UniqueConstraint("list_id", "position", name="uq_membership_list_position"),
        Index("ix_membership_list_active_position", "list_id", "is_active", "position"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    list_id = Column(String(36), ForeignKey("contact_lists.id"), nullable=False)
    position = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True)
    added_at = Column(DateTime, default=utcnow)
    removed_at = Column(DateTime, nullable=True)


from sendlists.models.suppression import SuppressionHistoryEntry  # noqa: E402,F401
from sendlists.models.maintenance import ListMaintenanceLog  # noqa: E402,F401
