"""List store: typed send lists (master, campaign rounds, suppression) and their cached metadata."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sendlists.models import Contact, ContactList, ContactStatus, ListMembership, ListType
from sendlists.schemas import ListHealthAssessment, ListHealthMetrics, ListMetadata
from sendlists.services.cache import CacheLayer, get_cache
from sendlists.services.errors import DuplicateRoundListError, NotFoundError, SendListsError
from sendlists.services.resilience import call_with_retry

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "description", "external_list_id"}


def _list_type(value: str) -> str:
    try:
        return ListType(value).value
    except ValueError:
        raise SendListsError(f"Unknown list type {value!r}") from None


class ListService:
    """CRUD over ContactList plus the cache-backed metadata view."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheLayer] = None):
        self.db = db
        self.cache = cache or get_cache()

    async def create_list(
        self,
        name: str,
        list_type: str,
        round_number: Optional[int] = None,
        external_list_id: Optional[str] = None,
        description: str = "",
    ) -> ContactList:
        list_type = _list_type(list_type)
        if list_type == ListType.CAMPAIGN_ROUND.value:
            if not round_number or round_number < 1:
                raise SendListsError("Campaign round lists need a round number >= 1")
            existing = await self.get_round_list(round_number)
            if existing:
                raise DuplicateRoundListError(round_number, existing.id)
        else:
            round_number = None

        contact_list = ContactList(
            name=name,
            list_type=list_type,
            round_number=round_number,
            external_list_id=external_list_id,
            description=description,
        )
        self.db.add(contact_list)
        await self.db.commit()
        await self.db.refresh(contact_list)

        await self.cache.invalidate_list_cache(contact_list.id)
        logger.info(f"Created {list_type} list {contact_list.id} ({name})")
        return contact_list

    async def get_list(self, list_id: str) -> Optional[ContactList]:
        result = await self.db.execute(select(ContactList).where(ContactList.id == list_id))
        return result.scalar_one_or_none()

    async def require_list(self, list_id: str) -> ContactList:
        contact_list = await self.get_list(list_id)
        if not contact_list:
            raise NotFoundError("List", list_id)
        return contact_list

    async def get_list_by_external_id(self, external_list_id: str) -> Optional[ContactList]:
        result = await self.db.execute(
            select(ContactList).where(ContactList.external_list_id == external_list_id)
        )
        return result.scalar_one_or_none()

    async def get_all_lists(self, include_inactive: bool = False) -> list[ContactList]:
        stmt = select(ContactList)
        if not include_inactive:
            stmt = stmt.where(ContactList.is_active.is_(True))
        stmt = stmt.order_by(ContactList.list_type, ContactList.round_number, ContactList.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_lists_by_type(self, list_type: str) -> list[ContactList]:
        result = await self.db.execute(
            select(ContactList)
            .where(ContactList.list_type == _list_type(list_type), ContactList.is_active.is_(True))
            .order_by(ContactList.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_master_list(self) -> Optional[ContactList]:
        lists = await self.get_lists_by_type(ListType.MASTER)
        return lists[0] if lists else None

    async def get_suppression_list(self) -> Optional[ContactList]:
        lists = await self.get_lists_by_type(ListType.SUPPRESSION)
        return lists[0] if lists else None

    async def get_round_list(self, round_number: int) -> Optional[ContactList]:
        result = await self.db.execute(
            select(ContactList).where(
                ContactList.list_type == ListType.CAMPAIGN_ROUND.value,
                ContactList.round_number == round_number,
                ContactList.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def get_round_lists(self, rounds: int) -> dict[int, Optional[ContactList]]:
        """Active list for each round 1..rounds (``None`` where a round has no list)."""
        result = await self.db.execute(
            select(ContactList).where(
                ContactList.list_type == ListType.CAMPAIGN_ROUND.value,
                ContactList.is_active.is_(True),
            )
        )
        by_round = {cl.round_number: cl for cl in result.scalars().all()}
        return {n: by_round.get(n) for n in range(1, rounds + 1)}

    async def get_active_round_list_ids(self) -> set[str]:
        result = await self.db.execute(
            select(ContactList.id).where(
                ContactList.list_type == ListType.CAMPAIGN_ROUND.value,
                ContactList.is_active.is_(True),
            )
        )
        return set(result.scalars().all())

    async def update_list(self, list_id: str, **fields) -> ContactList:
        contact_list = await self.require_list(list_id)
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                raise SendListsError(f"Field {key!r} cannot be updated")
            if value is not None:
                setattr(contact_list, key, value)
        await self.db.commit()
        await self.db.refresh(contact_list)
        await self.cache.invalidate_list_cache(list_id)
        return contact_list

    async def retire_list(self, list_id: str) -> ContactList:
        """Soft delete: the list and its memberships stay for audit, but the round slot frees up."""
        contact_list = await self.require_list(list_id)
        contact_list.is_active = False
        contact_list.retired_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(contact_list)
        await self.cache.invalidate_list_cache(list_id)
        logger.info(f"Retired list {list_id}")
        return contact_list

    async def refresh_contact_count(self, list_id: str) -> int:
        """Recompute contact_count from active memberships and store it."""
        count = await self.db.scalar(
            select(func.count(ListMembership.id)).where(
                ListMembership.list_id == list_id,
                ListMembership.is_active.is_(True),
            )
        )
        contact_list = await self.get_list(list_id)
        if contact_list is not None:
            contact_list.contact_count = count or 0
            await self.db.commit()
        await self.cache.invalidate_list_cache(list_id)
        return count or 0

    # ── Cached metadata ────────────────────────────────
    async def get_list_metadata(self, list_id: str) -> Optional[ListMetadata]:
        cached = await self.cache.get_cached_list_metadata(list_id)
        if cached is not None:
            return cached

        contact_list = await self.get_list(list_id)
        if contact_list is None:
            return None
        metadata = ListMetadata.from_model(contact_list)
        await self.cache.set_cached_list_metadata(list_id, metadata)
        return metadata

    # ── Provider sync ──────────────────────────────────
    async def sync_list_from_provider(self, list_id: str, provider) -> ContactList:
        """Refresh rate/health columns from the delivery provider's statistics."""
        contact_list = await self.require_list(list_id)
        if not contact_list.external_list_id:
            raise SendListsError(f"List {list_id} has no external list id")

        stats = await provider.get_list_statistics(contact_list.external_list_id)

        contact_list.bounce_rate = round(stats.recent_bounces / max(stats.total_contacts, 1), 4)
        if stats.sent:
            contact_list.delivery_rate = round((stats.delivered or 0) / stats.sent, 4)
        else:
            contact_list.delivery_rate = round(1 - contact_list.bounce_rate, 4)
        if stats.list_health is not None:
            contact_list.health_score = stats.list_health
        contact_list.last_synced_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(contact_list)

        await self.cache.set_cached_list_metadata(list_id, ListMetadata.from_model(contact_list))
        logger.info(
            f"Synced list {list_id}: bounce_rate={contact_list.bounce_rate}, "
            f"delivery_rate={contact_list.delivery_rate}"
        )
        return contact_list

    async def sync_all_lists_from_provider(self, provider) -> list[ContactList]:
        result = await self.db.execute(
            select(ContactList).where(
                ContactList.is_active.is_(True),
                ContactList.external_list_id.isnot(None),
            )
        )
        synced = []
        for contact_list in result.scalars().all():
            try:
                synced.append(await self.sync_list_from_provider(contact_list.id, provider))
            except Exception as e:
                logger.error(f"Failed to sync list {contact_list.id}: {e}")
        logger.info(f"Synced {len(synced)} list(s) from provider")
        return synced

    # ── Health ─────────────────────────────────────────
    async def get_health_metrics(self, list_id: str) -> ListHealthMetrics:
        """
        Bounce and delivery rates for a list's active members.

        Synced provider rates win; without a sync they are derived from each
        member's last recorded bounce.
        """
        contact_list = await self.require_list(list_id)
        result = await self.db.execute(
            select(Contact.status, Contact.last_bounce_type)
            .join(ListMembership, ListMembership.contact_id == Contact.id)
            .where(ListMembership.list_id == list_id, ListMembership.is_active.is_(True))
        )
        rows = result.all()
        total = len(rows)
        by_type = {"hard": 0, "soft": 0, "spam": 0}
        for _, bounce_type in rows:
            if bounce_type in by_type:
                by_type[bounce_type] += 1

        def rate(count: int) -> float:
            return round(count / total, 4) if total else 0.0

        bounce_rate = rate(by_type["hard"] + by_type["soft"])
        if contact_list.bounce_rate is not None:
            bounce_rate = min(max(contact_list.bounce_rate, 0.0), 1.0)
        delivery_rate = round(1 - bounce_rate, 4)
        if contact_list.delivery_rate is not None:
            delivery_rate = min(max(contact_list.delivery_rate, 0.0), 1.0)

        return ListHealthMetrics(
            list_name=contact_list.name,
            contact_count=total,
            active_contact_count=sum(1 for status, _ in rows if status == ContactStatus.ACTIVE.value),
            bounce_rate=bounce_rate,
            hard_bounce_rate=rate(by_type["hard"]),
            soft_bounce_rate=rate(by_type["soft"]),
            spam_rate=rate(by_type["spam"]),
            delivery_rate=delivery_rate,
        )

    async def assess_list_health(self, list_id: str, recommender) -> ListHealthAssessment:
        """Ask the recommender for a health assessment and store its score on the list."""
        metrics = await self.get_health_metrics(list_id)
        assessment = await call_with_retry("recommender", recommender.analyze_list_health, metrics)

        contact_list = await self.require_list(list_id)
        contact_list.health_score = assessment.health_score
        await self.db.commit()
        await self.cache.invalidate_list_cache(list_id)
        logger.info(
            f"List {list_id} health: {assessment.health_score} ({assessment.health_grade}), "
            f"urgency {assessment.urgency}"
        )
        return assessment
