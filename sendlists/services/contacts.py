"""Contact store: contact identity, bounce counters, and FIFO list membership."""

import asyncio
import json
import logging
import math
import re
import weakref
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sendlists.config import get_settings
from sendlists.models import (
    STATUS_ORDER,
    Contact,
    ContactList,
    ContactStatus,
    ListMembership,
    ListType,
    SuppressionHistoryEntry,
)
from sendlists.schemas import (
    BulkImportResult,
    ContactOut,
    ImportRecord,
    ImportRecordError,
    ListContactsPage,
    ListMember,
)
from sendlists.services.cache import CacheLayer, get_cache
from sendlists.services.errors import (
    ContactStateError,
    InvalidEmailError,
    NotFoundError,
    SendListsError,
)
from sendlists.services.lists import ListService

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")

BOUNCE_TYPES = {"hard", "soft", "spam"}

CONTACT_FIELDS = {"name", "first_name", "last_name", "properties", "status"}

# One append lock per (event loop, list): position = max + 1 must be read and written atomically
_append_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def list_lock(list_id: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _append_locks.setdefault(loop, {})
    if list_id not in locks:
        locks[list_id] = asyncio.Lock()
    return locks[list_id]


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not EMAIL_RE.match(normalized):
        raise InvalidEmailError(email)
    return normalized


class ContactService:
    """Contacts and their list memberships. Every mutating call commits."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheLayer] = None):
        self.db = db
        self.cache = cache or get_cache()
        self.lists = ListService(db, self.cache)

    # ── Contacts ────────────────────────────────────────
    async def create_or_get_contact(
        self,
        email: str,
        name: str = "",
        first_name: str = "",
        last_name: str = "",
        external_id: Optional[str] = None,
        properties: Optional[dict] = None,
    ) -> Contact:
        email = normalize_email(email)

        existing = await self.get_contact_by_email(email)
        if existing:
            if external_id and not existing.external_id:
                existing.external_id = external_id
                await self.db.commit()
            return existing

        contact = Contact(
            email=email,
            name=name,
            first_name=first_name,
            last_name=last_name,
            external_id=external_id,
            properties=json.dumps(properties or {}),
        )
        self.db.add(contact)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent insert of the same email
            await self.db.rollback()
            existing = await self.get_contact_by_email(email)
            if existing is None:
                raise
            return existing

        await self.db.refresh(contact)
        logger.info(f"Created contact {contact.id} <{email}>")
        return contact

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        result = await self.db.execute(select(Contact).where(Contact.id == contact_id))
        return result.scalar_one_or_none()

    async def require_contact(self, contact_id: str) -> Contact:
        contact = await self.get_contact(contact_id)
        if not contact:
            raise NotFoundError("Contact", contact_id)
        return contact

    async def get_contact_by_email(self, email: str) -> Optional[Contact]:
        result = await self.db.execute(select(Contact).where(Contact.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def update_contact(self, contact_id: str, **fields) -> Contact:
        """
        Update profile fields. A status change must move forward
        (active → bounced_soft → bounced_hard) and can never leave or enter
        ``suppressed``; those transitions belong to the suppression engine.
        """
        contact = await self.require_contact(contact_id)

        for key, value in fields.items():
            if key not in CONTACT_FIELDS:
                raise SendListsError(f"Field {key!r} cannot be updated")
            if value is None:
                continue
            if key == "properties":
                value = json.dumps(value)
            elif key == "status":
                value = ContactStatus(value).value
                if value == ContactStatus.SUPPRESSED.value or contact.status == ContactStatus.SUPPRESSED.value:
                    raise ContactStateError("Suppression status changes go through suppress/reactivate")
                if STATUS_ORDER[value] < STATUS_ORDER[contact.status]:
                    raise ContactStateError(f"Cannot move contact from {contact.status} back to {value}")
            setattr(contact, key, value)

        await self.db.commit()
        await self.db.refresh(contact)
        return contact

    async def record_bounce(
        self,
        contact_id: str,
        bounce_type: str,
        bounced_at: Optional[datetime] = None,
    ) -> Contact:
        """
        Count a bounce. Soft bounces escalate to bounced_hard at the configured threshold.

        A provider event (``bounced_at`` given) dated at or before the
        contact's ``last_bounce_date`` was already counted by an earlier
        fetch of the same window and leaves the contact unchanged.
        """
        if bounce_type not in BOUNCE_TYPES:
            raise SendListsError(f"Unknown bounce type {bounce_type!r}")

        contact = await self.require_contact(contact_id)
        if bounced_at is not None and contact.last_bounce_date is not None:
            if _as_utc(bounced_at) <= _as_utc(contact.last_bounce_date):
                logger.debug(f"Bounce for {contact_id} at {bounced_at.isoformat()} already recorded")
                return contact
        threshold = get_settings().soft_bounce_threshold

        contact.bounce_count = (contact.bounce_count or 0) + 1
        contact.last_bounce_date = bounced_at or datetime.now(timezone.utc)
        contact.last_bounce_type = bounce_type

        if bounce_type in ("hard", "spam") or contact.bounce_count >= threshold:
            new_status = ContactStatus.BOUNCED_HARD.value
        else:
            new_status = ContactStatus.BOUNCED_SOFT.value

        # Never downgrade, and a suppressed contact keeps its status
        if STATUS_ORDER[new_status] > STATUS_ORDER[contact.status]:
            contact.status = new_status

        await self.db.commit()
        await self.db.refresh(contact)
        logger.info(
            f"Recorded {bounce_type} bounce for {contact_id}: "
            f"count={contact.bounce_count}, status={contact.status}"
        )
        return contact

    async def get_contact_history(self, contact_id: str) -> dict:
        contact = await self.require_contact(contact_id)
        suppressions = await self.db.scalar(
            select(func.count(SuppressionHistoryEntry.id)).where(
                SuppressionHistoryEntry.contact_id == contact_id,
                SuppressionHistoryEntry.is_active.is_(True),
            )
        )
        memberships = await self.db.scalar(
            select(func.count(ListMembership.id)).where(
                ListMembership.contact_id == contact_id,
                ListMembership.is_active.is_(True),
            )
        )
        return {
            "contact": ContactOut.from_model(contact),
            "bounces": contact.bounce_count or 0,
            "suppressions": suppressions or 0,
            "list_memberships": memberships or 0,
        }

    # ── Membership ─────────────────────────────────────
    async def get_membership(self, contact_id: str, list_id: str) -> Optional[ListMembership]:
        result = await self.db.execute(
            select(ListMembership).where(
                ListMembership.contact_id == contact_id,
                ListMembership.list_id == list_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_contact_to_list(
        self,
        contact_id: str,
        list_id: str,
        position: Optional[int] = None,
    ) -> ListMembership:
        """
        Idempotent add.

        An active membership is returned untouched; an inactive one is
        reactivated in place, keeping its original position; otherwise a new
        membership is appended after the highest position ever used in the
        list. An explicit ``position`` must also land after that maximum.
        """
        async with list_lock(list_id):
            existing = await self.get_membership(contact_id, list_id)
            if existing and existing.is_active:
                return existing

            if existing:
                existing.is_active = True
                existing.removed_at = None
                await self.db.commit()
                await self.db.refresh(existing)
                logger.info(f"Reactivated membership of {contact_id} in {list_id} at position {existing.position}")
                await self.lists.refresh_contact_count(list_id)
                return existing

            await self.require_contact(contact_id)
            await self.lists.require_list(list_id)

            max_position = await self.db.scalar(
                select(func.max(ListMembership.position)).where(ListMembership.list_id == list_id)
            ) or 0
            if position is None:
                position = max_position + 1
            elif position <= max_position:
                raise SendListsError(
                    f"Position {position} would break FIFO order in list {list_id} (last position {max_position})"
                )

            membership = ListMembership(contact_id=contact_id, list_id=list_id, position=position)
            self.db.add(membership)
            await self.db.commit()
            await self.db.refresh(membership)

            await self.lists.refresh_contact_count(list_id)
            return membership

    async def remove_contact_from_list(self, contact_id: str, list_id: str) -> ListMembership:
        """Soft delete. Remaining positions are left exactly as they were."""
        async with list_lock(list_id):
            membership = await self.get_membership(contact_id, list_id)
            if membership is None:
                raise NotFoundError("Membership", f"{contact_id}@{list_id}")
            if not membership.is_active:
                return membership

            membership.is_active = False
            membership.removed_at = datetime.now(timezone.utc)
            await self.db.commit()
            await self.db.refresh(membership)

            await self.lists.refresh_contact_count(list_id)
            logger.info(f"Removed {contact_id} from list {list_id}")
            return membership

    async def bulk_import_contacts(
        self,
        list_id: str,
        records: list[Union[ImportRecord, dict]],
    ) -> BulkImportResult:
        """Create-or-get then add each record. A bad record is reported, never fatal to the batch."""
        await self.lists.require_list(list_id)
        logger.info(f"Bulk importing {len(records)} contact(s) into {list_id}")

        result = BulkImportResult()
        for raw in records:
            email = raw.get("email", "") if isinstance(raw, dict) else raw.email
            try:
                record = ImportRecord.model_validate(raw)
                contact = await self.create_or_get_contact(
                    email=record.email,
                    name=record.name,
                    first_name=record.first_name,
                    last_name=record.last_name,
                    external_id=record.external_id,
                    properties=record.properties,
                )
                await self.add_contact_to_list(contact.id, list_id)
                result.success += 1
                result.contact_ids.append(contact.id)
            except Exception as e:
                await self.db.rollback()
                result.failed += 1
                result.errors.append(ImportRecordError(email=str(email), error=str(e)))
                logger.warning(f"Import of {email!r} into {list_id} failed: {e}")

        logger.info(f"Bulk import into {list_id}: success={result.success}, failed={result.failed}")
        return result

    async def get_list_contacts(
        self,
        list_id: str,
        page: int = 1,
        page_size: int = 100,
    ) -> ListContactsPage:
        """Active members in FIFO order (position ascending)."""
        page = max(page, 1)
        active = (ListMembership.list_id == list_id, ListMembership.is_active.is_(True))

        total = await self.db.scalar(select(func.count(ListMembership.id)).where(*active)) or 0
        result = await self.db.execute(
            select(ListMembership, Contact)
            .join(Contact, Contact.id == ListMembership.contact_id)
            .where(*active)
            .order_by(ListMembership.position.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        members = [
            ListMember(contact=ContactOut.from_model(contact), position=m.position, added_at=m.added_at)
            for m, contact in result.all()
        ]
        return ListContactsPage(
            members=members,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if page_size else 0,
        )

    async def get_active_member_ids(self, list_id: str) -> list[str]:
        """Every active member id of a list, FIFO ordered."""
        result = await self.db.execute(
            select(ListMembership.contact_id)
            .where(ListMembership.list_id == list_id, ListMembership.is_active.is_(True))
            .order_by(ListMembership.position.asc())
        )
        return list(result.scalars().all())

    async def get_registration_ordered_ids(self, list_id: str) -> list[str]:
        """
        Active member ids of a list in registration order.

        Registration order is the contact's position in the master list,
        falling back to creation time for contacts the master list lacks.
        Contacts moved into a round after others keep their place.
        """
        result = await self.db.execute(
            select(ListMembership.contact_id, ListMembership.position, Contact.created_at)
            .join(Contact, Contact.id == ListMembership.contact_id)
            .where(ListMembership.list_id == list_id, ListMembership.is_active.is_(True))
        )
        rows = result.all()

        master_positions: dict[str, int] = {}
        master = await self.lists.get_master_list()
        if master is not None and master.id != list_id and rows:
            master_result = await self.db.execute(
                select(ListMembership.contact_id, ListMembership.position).where(
                    ListMembership.list_id == master.id,
                    ListMembership.contact_id.in_([r.contact_id for r in rows]),
                )
            )
            master_positions = {cid: pos for cid, pos in master_result.all()}

        def registration_key(row):
            master_pos = master_positions.get(row.contact_id)
            return (master_pos is None, master_pos or 0, row.created_at, row.position)

        return [row.contact_id for row in sorted(rows, key=registration_key)]

    async def get_contact_lists(self, contact_id: str) -> list[tuple[ListMembership, ContactList]]:
        result = await self.db.execute(
            select(ListMembership, ContactList)
            .join(ContactList, ContactList.id == ListMembership.list_id)
            .where(ListMembership.contact_id == contact_id, ListMembership.is_active.is_(True))
            .order_by(ListMembership.added_at.desc())
        )
        return [(m, cl) for m, cl in result.all()]

    async def get_round_memberships(self, contact_id: str) -> list[ListMembership]:
        result = await self.db.execute(
            select(ListMembership)
            .join(ContactList, ContactList.id == ListMembership.list_id)
            .where(
                ListMembership.contact_id == contact_id,
                ListMembership.is_active.is_(True),
                ContactList.list_type == ListType.CAMPAIGN_ROUND.value,
                ContactList.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def remove_from_round_lists(self, contact_id: str) -> list[str]:
        """Soft-remove the contact from every active campaign round list. Returns the list ids."""
        list_ids = [m.list_id for m in await self.get_round_memberships(contact_id)]
        for list_id in list_ids:
            await self.remove_contact_from_list(contact_id, list_id)
        return list_ids
