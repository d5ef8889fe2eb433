"""Suppression engine: append-only suppression history and the derived "may we send?" answer."""

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sendlists.models import Contact, ContactStatus
from sendlists.models.suppression import PERMANENT_REASONS, SuppressionHistoryEntry
from sendlists.schemas import (
    BulkSuppressionError,
    BulkSuppressionResult,
    ContactOut,
    SuppressionCheck,
    SuppressRequest,
)
from sendlists.services.cache import CacheLayer, get_cache
from sendlists.services.contacts import ContactService

logger = logging.getLogger(__name__)


def is_permanent_reason(reason: str) -> bool:
    return (reason or "").lower() in PERMANENT_REASONS


class SuppressionService:
    """
    Records suppression decisions and answers suppression checks.

    The history entry and ``Contact.status`` are written in one transaction
    and are the authoritative pair. Mirroring into the suppression list,
    pulling the contact out of round lists and the cache are best effort.
    """

    def __init__(self, db: AsyncSession, cache: Optional[CacheLayer] = None):
        self.db = db
        self.cache = cache or get_cache()
        self.contacts = ContactService(db, self.cache)

    async def get_active_entry(self, contact_id: str) -> Optional[SuppressionHistoryEntry]:
        result = await self.db.execute(
            select(SuppressionHistoryEntry)
            .where(
                SuppressionHistoryEntry.contact_id == contact_id,
                SuppressionHistoryEntry.is_active.is_(True),
            )
            .order_by(SuppressionHistoryEntry.suppressed_at.desc())
        )
        return result.scalars().first()

    async def suppress_contact(
        self,
        contact_id: str,
        reason: str,
        suppressed_by: str,
        ai_rationale: Optional[str] = None,
        confidence: Optional[float] = None,
        source_campaign_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> SuppressionHistoryEntry:
        request = SuppressRequest(
            contact_id=contact_id,
            reason=reason,
            suppressed_by=suppressed_by,
            ai_rationale=ai_rationale,
            confidence=confidence,
            source_campaign_id=source_campaign_id,
            metadata=metadata or {},
        )
        entry, _ = await self._suppress(request)
        return entry

    async def apply_suppression(self, request: SuppressRequest) -> bool:
        """Suppress from a request object. False when the contact already had an active entry."""
        _, created = await self._suppress(request)
        return created

    async def _suppress(self, request: SuppressRequest) -> tuple[SuppressionHistoryEntry, bool]:
        contact = await self.contacts.require_contact(request.contact_id)

        existing = await self.get_active_entry(contact.id)
        if existing:
            if contact.status != ContactStatus.SUPPRESSED.value:
                contact.status = ContactStatus.SUPPRESSED.value
                await self.db.commit()
            logger.info(f"Contact {contact.id} already suppressed ({existing.reason})")
            return existing, False

        entry = SuppressionHistoryEntry(
            contact_id=contact.id,
            reason=request.reason,
            suppressed_by=request.suppressed_by,
            ai_rationale=request.ai_rationale,
            confidence=request.confidence,
            source_campaign_id=request.source_campaign_id,
            metadata_=json.dumps(request.metadata),
        )
        self.db.add(entry)
        contact.status = ContactStatus.SUPPRESSED.value
        await self.db.commit()
        await self.db.refresh(entry)

        contact_id, email = contact.id, contact.email
        await self._mirror_to_suppression_list(contact_id)
        await self._remove_from_rounds(contact_id)
        await self.cache.invalidate_suppression_status(contact_id, email)
        await self.db.refresh(entry)

        logger.info(f"Suppressed contact {contact_id} ({request.reason}) by {request.suppressed_by}")
        return entry, True

    async def _mirror_to_suppression_list(self, contact_id: str) -> None:
        try:
            suppression_list = await self.contacts.lists.get_suppression_list()
            if suppression_list:
                await self.contacts.add_contact_to_list(contact_id, suppression_list.id)
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Failed to add {contact_id} to the suppression list: {e}")

    async def _remove_from_rounds(self, contact_id: str) -> None:
        try:
            removed = await self.contacts.remove_from_round_lists(contact_id)
            if removed:
                logger.info(f"Removed suppressed contact {contact_id} from {len(removed)} round list(s)")
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Failed to remove suppressed contact {contact_id} from round lists: {e}")

    async def bulk_suppress_contacts(
        self,
        entries: list[Union[SuppressRequest, dict]],
    ) -> BulkSuppressionResult:
        logger.info(f"Bulk suppressing {len(entries)} contact(s)")
        result = BulkSuppressionResult()

        for raw in entries:
            contact_id = raw.get("contact_id", "") if isinstance(raw, dict) else raw.contact_id
            try:
                created = await self.apply_suppression(SuppressRequest.model_validate(raw))
                if created:
                    result.success += 1
                else:
                    result.skipped += 1
            except Exception as e:
                await self.db.rollback()
                result.failed += 1
                result.errors.append(BulkSuppressionError(contact_id=str(contact_id), error=str(e)))
                logger.error(f"Failed to suppress {contact_id}: {e}")

        logger.info(
            f"Bulk suppression: success={result.success}, skipped={result.skipped}, failed={result.failed}"
        )
        return result

    async def reactivate_contact(
        self,
        contact_id: str,
        reactivated_by: str,
        reason: Optional[str] = None,
    ) -> Contact:
        """
        Close every active entry and set the contact back to active.

        Round lists are not touched: putting the contact back into a send
        round is a separate, explicit add.
        """
        contact = await self.contacts.require_contact(contact_id)
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(SuppressionHistoryEntry).where(
                SuppressionHistoryEntry.contact_id == contact_id,
                SuppressionHistoryEntry.is_active.is_(True),
            )
        )
        for entry in result.scalars().all():
            entry.is_active = False
            entry.reactivated_at = now
            entry.reactivated_by = reactivated_by
            if reason:
                meta = json.loads(entry.metadata_ or "{}")
                meta["reactivation_reason"] = reason
                entry.metadata_ = json.dumps(meta)

        contact.status = ContactStatus.ACTIVE.value
        await self.db.commit()
        email = contact.email

        try:
            suppression_list = await self.contacts.lists.get_suppression_list()
            if suppression_list and await self.contacts.get_membership(contact_id, suppression_list.id):
                await self.contacts.remove_contact_from_list(contact_id, suppression_list.id)
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Failed to remove {contact_id} from the suppression list: {e}")

        await self.cache.invalidate_suppression_status(contact_id, email)
        await self.db.refresh(contact)
        logger.info(f"Reactivated contact {contact_id} by {reactivated_by}")
        return contact

    async def is_contact_suppressed(self, contact_id_or_email: str) -> SuppressionCheck:
        """
        Cache first, then the store. A contact counts as suppressed when its
        status says so or it has an active history entry.

        Fails open: any read error answers "not suppressed".
        """
        try:
            key = contact_id_or_email.strip()
            if "@" in key:
                key = key.lower()

            cached = await self.cache.get_cached_suppression_status(key)
            if cached is False:
                return SuppressionCheck(is_suppressed=False)

            if "@" in key:
                contact = await self.contacts.get_contact_by_email(key)
            else:
                contact = await self.contacts.get_contact(key)
            if contact is None:
                return SuppressionCheck(is_suppressed=False)

            entry = await self.get_active_entry(contact.id)
            is_suppressed = entry is not None or contact.status == ContactStatus.SUPPRESSED.value

            await self.cache.cache_suppression_status(contact.id, is_suppressed)
            await self.cache.cache_suppression_status(contact.email, is_suppressed)

            return SuppressionCheck(
                is_suppressed=is_suppressed,
                reason=entry.reason if entry else None,
                suppressed_at=entry.suppressed_at if entry else None,
                suppressed_by=entry.suppressed_by if entry else None,
            )
        except Exception as e:
            logger.error(f"Suppression check failed for {contact_id_or_email}, treating as not suppressed: {e}")
            return SuppressionCheck(is_suppressed=False)

    async def get_suppression_history(self, contact_id: str) -> list[SuppressionHistoryEntry]:
        result = await self.db.execute(
            select(SuppressionHistoryEntry)
            .where(SuppressionHistoryEntry.contact_id == contact_id)
            .order_by(SuppressionHistoryEntry.suppressed_at.desc())
        )
        return list(result.scalars().all())

    async def get_all_suppressed_contacts(self, page: int = 1, page_size: int = 100) -> dict:
        page = max(page, 1)
        suppressed = Contact.status == ContactStatus.SUPPRESSED.value
        total = await self.db.scalar(select(func.count(Contact.id)).where(suppressed)) or 0
        result = await self.db.execute(
            select(Contact)
            .where(suppressed)
            .order_by(Contact.updated_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return {
            "contacts": [ContactOut.from_model(c) for c in result.scalars().all()],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if page_size else 0,
        }

    async def get_suppression_stats(self) -> dict:
        active = SuppressionHistoryEntry.is_active.is_(True)
        week_ago = datetime.now(timezone.utc) - timedelta(days=7)

        async def count(*conditions) -> int:
            return await self.db.scalar(
                select(func.count(SuppressionHistoryEntry.id)).where(active, *conditions)
            ) or 0

        return {
            "total_suppressed": await count(),
            "suppressed_by_ai": await count(SuppressionHistoryEntry.suppressed_by == "ai"),
            "suppressed_manually": await count(SuppressionHistoryEntry.suppressed_by != "ai"),
            "hard_bounces": await count(SuppressionHistoryEntry.reason.contains("hard_bounce")),
            "soft_bounces": await count(SuppressionHistoryEntry.reason.contains("soft_bounce")),
            "spam_complaints": await count(SuppressionHistoryEntry.reason.contains("spam")),
            "recent_suppressions": await count(SuppressionHistoryEntry.suppressed_at >= week_ago),
        }

    async def clear_suppression_cache(self, contact_id: str) -> None:
        contact = await self.contacts.get_contact(contact_id)
        keys = [contact_id] + ([contact.email] if contact else [])
        await self.cache.invalidate_suppression_status(*keys)
