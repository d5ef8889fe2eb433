"""Tests for the contact store and FIFO list membership."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from sendlists.database import async_session
from sendlists.models import Contact, ContactStatus, ListMembership
from sendlists.services.contacts import ContactService, normalize_email
from sendlists.services.errors import (
    ContactStateError,
    InvalidEmailError,
    NotFoundError,
    SendListsError,
)
from sendlists.services.lists import ListService


async def _round_list(db, round_number=1):
    return await ListService(db).create_list(f"Round {round_number}", "campaign_round", round_number=round_number)


# ── Contacts ─────────────────────────────────────────────

class TestContacts:
    def test_normalize_email(self):
        assert normalize_email("  Ana@Example.COM ") == "ana@example.com"
        with pytest.raises(InvalidEmailError):
            normalize_email("not-an-email")

    @pytest.mark.asyncio
    async def test_create_or_get_is_unique_by_email(self, db):
        service = ContactService(db)
        first = await service.create_or_get_contact("ana@example.com", first_name="Ana")
        again = await service.create_or_get_contact("ANA@example.com ")
        assert again.id == first.id
        count = await db.scalar(select(func.count(Contact.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_create_fills_missing_external_id(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        assert contact.external_id is None
        contact = await service.create_or_get_contact("ana@example.com", external_id="mj-1")
        assert contact.external_id == "mj-1"

    @pytest.mark.asyncio
    async def test_defaults(self, db):
        contact = await ContactService(db).create_or_get_contact("ana@example.com", properties={"plan": "pro"})
        assert contact.status == ContactStatus.ACTIVE.value
        assert contact.bounce_count == 0
        assert contact.last_bounce_date is None

    @pytest.mark.asyncio
    async def test_update_profile(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        updated = await service.update_contact(contact.id, first_name="Ana", properties={"vip": True})
        assert updated.first_name == "Ana"
        assert '"vip": true' in updated.properties

    @pytest.mark.asyncio
    async def test_update_status_forward_only(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        await service.update_contact(contact.id, status="bounced_hard")
        with pytest.raises(ContactStateError):
            await service.update_contact(contact.id, status="active")

    @pytest.mark.asyncio
    async def test_update_cannot_suppress(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        with pytest.raises(ContactStateError):
            await service.update_contact(contact.id, status="suppressed")

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_field(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        with pytest.raises(SendListsError):
            await service.update_contact(contact.id, bounce_count=0)


class TestRecordBounce:
    @pytest.mark.asyncio
    async def test_soft_bounces_escalate_at_threshold(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")

        contact = await service.record_bounce(contact.id, "soft")
        assert contact.status == ContactStatus.BOUNCED_SOFT.value
        contact = await service.record_bounce(contact.id, "soft")
        assert contact.status == ContactStatus.BOUNCED_SOFT.value
        contact = await service.record_bounce(contact.id, "soft")
        assert contact.bounce_count == 3
        assert contact.status == ContactStatus.BOUNCED_HARD.value
        assert contact.last_bounce_type == "soft"

    @pytest.mark.asyncio
    async def test_hard_bounce(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        when = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        contact = await service.record_bounce(contact.id, "hard", bounced_at=when)
        assert contact.status == ContactStatus.BOUNCED_HARD.value
        assert contact.last_bounce_date.replace(tzinfo=None) == when.replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_refetched_event_counted_once(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        when = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        await service.record_bounce(contact.id, "soft", bounced_at=when)
        await service.record_bounce(contact.id, "soft", bounced_at=when)
        contact = await service.record_bounce(contact.id, "soft", bounced_at=when - timedelta(hours=1))
        assert contact.bounce_count == 1
        assert contact.status == ContactStatus.BOUNCED_SOFT.value

        contact = await service.record_bounce(contact.id, "soft", bounced_at=when + timedelta(hours=1))
        assert contact.bounce_count == 2

    @pytest.mark.asyncio
    async def test_never_downgrades(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        await service.record_bounce(contact.id, "spam")
        contact = await service.record_bounce(contact.id, "soft")
        assert contact.status == ContactStatus.BOUNCED_HARD.value
        assert contact.bounce_count == 2

    @pytest.mark.asyncio
    async def test_unknown_type(self, db):
        service = ContactService(db)
        contact = await service.create_or_get_contact("ana@example.com")
        with pytest.raises(SendListsError):
            await service.record_bounce(contact.id, "bouncy")


# ── Membership ───────────────────────────────────────────

class TestMembership:
    @pytest.mark.asyncio
    async def test_append_positions(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        positions = []
        for i in range(3):
            contact = await service.create_or_get_contact(f"c{i}@example.com")
            positions.append((await service.add_contact_to_list(contact.id, cl.id)).position)
        assert positions == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        contact = await service.create_or_get_contact("ana@example.com")
        first = await service.add_contact_to_list(contact.id, cl.id)
        second = await service.add_contact_to_list(contact.id, cl.id)
        assert second.id == first.id
        assert second.position == first.position
        active = await db.scalar(
            select(func.count(ListMembership.id)).where(
                ListMembership.contact_id == contact.id, ListMembership.is_active.is_(True)
            )
        )
        assert active == 1

    @pytest.mark.asyncio
    async def test_removal_never_renumbers(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        ids = []
        for i in range(4):
            contact = await service.create_or_get_contact(f"c{i}@example.com")
            await service.add_contact_to_list(contact.id, cl.id)
            ids.append(contact.id)

        await service.remove_contact_from_list(ids[1], cl.id)
        page = await service.get_list_contacts(cl.id)
        assert [m.position for m in page.members] == [1, 3, 4]
        assert page.total == 3

        # Next append goes after the highest position ever used
        late = await service.create_or_get_contact("late@example.com")
        assert (await service.add_contact_to_list(late.id, cl.id)).position == 5

    @pytest.mark.asyncio
    async def test_reactivation_keeps_position(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        a = await service.create_or_get_contact("a@example.com")
        b = await service.create_or_get_contact("b@example.com")
        first = await service.add_contact_to_list(a.id, cl.id)
        await service.add_contact_to_list(b.id, cl.id)

        removed = await service.remove_contact_from_list(a.id, cl.id)
        assert removed.is_active is False
        assert removed.removed_at is not None

        back = await service.add_contact_to_list(a.id, cl.id)
        assert back.id == first.id
        assert back.position == 1
        assert back.is_active is True
        assert back.removed_at is None

    @pytest.mark.asyncio
    async def test_explicit_position_must_follow_fifo(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        a = await service.create_or_get_contact("a@example.com")
        b = await service.create_or_get_contact("b@example.com")
        assert (await service.add_contact_to_list(a.id, cl.id, position=10)).position == 10
        with pytest.raises(SendListsError):
            await service.add_contact_to_list(b.id, cl.id, position=5)

    @pytest.mark.asyncio
    async def test_remove_missing_membership(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        contact = await service.create_or_get_contact("a@example.com")
        with pytest.raises(NotFoundError):
            await service.remove_contact_from_list(contact.id, cl.id)

    @pytest.mark.asyncio
    async def test_add_unknown_contact(self, db):
        cl = await _round_list(db)
        with pytest.raises(NotFoundError):
            await ContactService(db).add_contact_to_list("missing", cl.id)

    @pytest.mark.asyncio
    async def test_paging_in_fifo_order(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        for i in range(5):
            contact = await service.create_or_get_contact(f"c{i}@example.com")
            await service.add_contact_to_list(contact.id, cl.id)
        page = await service.get_list_contacts(cl.id, page=2, page_size=2)
        assert [m.contact.email for m in page.members] == ["c2@example.com", "c3@example.com"]
        assert page.total_pages == 3

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_positions(self):
        async with async_session() as db:
            cl = await _round_list(db)
            service = ContactService(db)
            ids = [(await service.create_or_get_contact(f"c{i}@example.com")).id for i in range(6)]
            list_id = cl.id

        async def add(contact_id):
            async with async_session() as session:
                return (await ContactService(session).add_contact_to_list(contact_id, list_id)).position

        positions = await asyncio.gather(*(add(cid) for cid in ids))
        assert sorted(positions) == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_round_memberships(self, db):
        service = ContactService(db)
        r1 = await _round_list(db, 1)
        master = await ListService(db).create_list("Master", "master")
        contact = await service.create_or_get_contact("a@example.com")
        await service.add_contact_to_list(contact.id, r1.id)
        await service.add_contact_to_list(contact.id, master.id)

        assert [m.list_id for m in await service.get_round_memberships(contact.id)] == [r1.id]
        assert await service.remove_from_round_lists(contact.id) == [r1.id]
        assert [cl.id for _, cl in await service.get_contact_lists(contact.id)] == [master.id]

    @pytest.mark.asyncio
    async def test_registration_order_follows_master(self, db):
        service = ContactService(db)
        master = await ListService(db).create_list("Master", "master")
        r1 = await _round_list(db, 1)
        a = await service.create_or_get_contact("a@example.com")
        b = await service.create_or_get_contact("b@example.com")
        await service.add_contact_to_list(a.id, master.id)
        await service.add_contact_to_list(b.id, master.id)
        # b joined the round first, but registered later
        await service.add_contact_to_list(b.id, r1.id)
        await service.add_contact_to_list(a.id, r1.id)

        assert await service.get_active_member_ids(r1.id) == [b.id, a.id]
        assert await service.get_registration_ordered_ids(r1.id) == [a.id, b.id]

    @pytest.mark.asyncio
    async def test_contact_history(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        contact = await service.create_or_get_contact("a@example.com")
        await service.add_contact_to_list(contact.id, cl.id)
        await service.record_bounce(contact.id, "soft")
        history = await service.get_contact_history(contact.id)
        assert history["bounces"] == 1
        assert history["list_memberships"] == 1
        assert history["suppressions"] == 0


# ── Bulk import ──────────────────────────────────────────

class TestBulkImport:
    @pytest.mark.asyncio
    async def test_one_bad_record(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        records = [{"email": f"user{i}@example.com"} for i in range(4)]
        records.insert(2, {"email": "broken@@nowhere"})

        result = await service.bulk_import_contacts(cl.id, records)
        assert result.success == 4
        assert result.failed == 1
        assert result.errors[0].email == "broken@@nowhere"
        assert len(result.contact_ids) == 4

        page = await service.get_list_contacts(cl.id)
        assert [m.contact.email for m in page.members] == [f"user{i}@example.com" for i in range(4)]
        assert [m.position for m in page.members] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_reimport_is_idempotent(self, db):
        service = ContactService(db)
        cl = await _round_list(db)
        records = [{"email": "a@example.com"}, {"email": "b@example.com"}]
        await service.bulk_import_contacts(cl.id, records)
        result = await service.bulk_import_contacts(cl.id, records)
        assert result.success == 2
        page = await service.get_list_contacts(cl.id)
        assert page.total == 2

    @pytest.mark.asyncio
    async def test_unknown_list(self, db):
        with pytest.raises(NotFoundError):
            await ContactService(db).bulk_import_contacts("missing", [{"email": "a@example.com"}])
