"""Tests for the suppression engine."""

import json
from unittest.mock import AsyncMock

import pytest

from sendlists.models import ContactStatus
from sendlists.services.cache import CacheLayer
from sendlists.services.contacts import ContactService
from sendlists.services.errors import ContactStateError, NotFoundError
from sendlists.services.lists import ListService
from sendlists.services.suppression import SuppressionService, is_permanent_reason


async def _setup(db):
    lists = ListService(db)
    suppression_list = await lists.create_list("Suppressed", "suppression")
    r1 = await lists.create_list("Round 1", "campaign_round", round_number=1)
    contacts = ContactService(db)
    contact = await contacts.create_or_get_contact("ana@example.com")
    await contacts.add_contact_to_list(contact.id, r1.id)
    return contact, r1, suppression_list


def test_permanent_reasons():
    assert is_permanent_reason("hard_bounce")
    assert is_permanent_reason("SPAM_COMPLAINT")
    assert not is_permanent_reason("soft_bounce_threshold")
    assert not is_permanent_reason("manual")


class TestSuppressContact:
    @pytest.mark.asyncio
    async def test_suppress(self, db):
        contact, r1, suppression_list = await _setup(db)
        service = SuppressionService(db)
        entry = await service.suppress_contact(
            contact.id, "hard_bounce", "ai", ai_rationale="mailbox gone", confidence=1.0, source_campaign_id="s-1"
        )
        assert entry.is_active is True
        assert entry.reason == "hard_bounce"
        assert entry.confidence == 1.0

        refreshed = await service.contacts.get_contact(contact.id)
        assert refreshed.status == ContactStatus.SUPPRESSED.value

        # Mirrored into the suppression list, pulled out of the round
        assert await service.contacts.get_active_member_ids(suppression_list.id) == [contact.id]
        assert await service.contacts.get_active_member_ids(r1.id) == []

    @pytest.mark.asyncio
    async def test_one_active_entry(self, db):
        contact, _, _ = await _setup(db)
        service = SuppressionService(db)
        first = await service.suppress_contact(contact.id, "hard_bounce", "ai")
        second = await service.suppress_contact(contact.id, "spam_complaint", "manual")
        assert second.id == first.id
        assert len(await service.get_suppression_history(contact.id)) == 1

    @pytest.mark.asyncio
    async def test_without_suppression_list(self, db):
        contacts = ContactService(db)
        contact = await contacts.create_or_get_contact("solo@example.com")
        entry = await SuppressionService(db).suppress_contact(contact.id, "manual", "ops")
        assert entry.is_active is True

    @pytest.mark.asyncio
    async def test_unknown_contact(self, db):
        with pytest.raises(NotFoundError):
            await SuppressionService(db).suppress_contact("missing", "manual", "ops")

    @pytest.mark.asyncio
    async def test_invalidates_cache(self, db):
        contact, _, _ = await _setup(db)
        client = AsyncMock()
        service = SuppressionService(db, cache=CacheLayer(client=client))
        await service.suppress_contact(contact.id, "manual", "ops")
        deleted = [call.args for call in client.delete.await_args_list]
        assert ("suppression:contact:" + contact.id, "suppression:contact:ana@example.com") in deleted

    @pytest.mark.asyncio
    async def test_monotonic_until_reactivated(self, db):
        contact, _, _ = await _setup(db)
        service = SuppressionService(db)
        await service.suppress_contact(contact.id, "hard_bounce", "ai")

        contacts = service.contacts
        with pytest.raises(ContactStateError):
            await contacts.update_contact(contact.id, status="active")
        bounced = await contacts.record_bounce(contact.id, "soft")
        assert bounced.status == ContactStatus.SUPPRESSED.value
        await service.suppress_contact(contact.id, "manual", "ops")
        assert (await contacts.get_contact(contact.id)).status == ContactStatus.SUPPRESSED.value


class TestBulkSuppress:
    @pytest.mark.asyncio
    async def test_counts(self, db):
        contacts = ContactService(db)
        a = await contacts.create_or_get_contact("a@example.com")
        b = await contacts.create_or_get_contact("b@example.com")
        service = SuppressionService(db)
        await service.suppress_contact(b.id, "manual", "ops")

        result = await service.bulk_suppress_contacts([
            {"contact_id": a.id, "reason": "hard_bounce", "suppressed_by": "ai", "confidence": 1.0},
            {"contact_id": b.id, "reason": "hard_bounce", "suppressed_by": "ai"},
            {"contact_id": "missing", "reason": "hard_bounce", "suppressed_by": "ai"},
            {"contact_id": a.id, "reason": "manual", "suppressed_by": "ai", "confidence": 7},
        ])
        assert result.success == 1
        assert result.skipped == 1
        assert result.failed == 2
        assert {e.contact_id for e in result.errors} == {"missing", a.id}
        assert (await contacts.get_contact(a.id)).status == ContactStatus.SUPPRESSED.value


class TestReactivate:
    @pytest.mark.asyncio
    async def test_reactivate(self, db):
        contact, r1, suppression_list = await _setup(db)
        service = SuppressionService(db)
        await service.suppress_contact(contact.id, "hard_bounce", "ai")

        reactivated = await service.reactivate_contact(contact.id, "ops@example.com", reason="confirmed address")
        assert reactivated.status == ContactStatus.ACTIVE.value

        history = await service.get_suppression_history(contact.id)
        assert history[0].is_active is False
        assert history[0].reactivated_by == "ops@example.com"
        assert json.loads(history[0].metadata_)["reactivation_reason"] == "confirmed address"

        # Out of the suppression list, but not back in any round
        assert await service.contacts.get_active_member_ids(suppression_list.id) == []
        assert await service.contacts.get_active_member_ids(r1.id) == []
        assert (await service.is_contact_suppressed(contact.id)).is_suppressed is False

    @pytest.mark.asyncio
    async def test_suppress_again_after_reactivation(self, db):
        contact, _, _ = await _setup(db)
        service = SuppressionService(db)
        await service.suppress_contact(contact.id, "manual", "ops")
        await service.reactivate_contact(contact.id, "ops")
        await service.suppress_contact(contact.id, "spam_complaint", "ai")
        history = await service.get_suppression_history(contact.id)
        assert len(history) == 2
        assert sum(1 for e in history if e.is_active) == 1


class TestIsSuppressed:
    @pytest.mark.asyncio
    async def test_by_id_and_email(self, db):
        contact, _, _ = await _setup(db)
        service = SuppressionService(db)
        assert (await service.is_contact_suppressed(contact.id)).is_suppressed is False
        await service.suppress_contact(contact.id, "spam_complaint", "ai")

        check = await service.is_contact_suppressed("ANA@example.com")
        assert check.is_suppressed is True
        assert check.reason == "spam_complaint"
        assert check.suppressed_by == "ai"

    @pytest.mark.asyncio
    async def test_unknown_contact(self, db):
        assert (await SuppressionService(db).is_contact_suppressed("nobody@example.com")).is_suppressed is False

    @pytest.mark.asyncio
    async def test_status_alone_is_enough(self, db):
        contact, _, _ = await _setup(db)
        contact.status = ContactStatus.SUPPRESSED.value
        await db.commit()
        check = await SuppressionService(db).is_contact_suppressed(contact.id)
        assert check.is_suppressed is True
        assert check.reason is None

    @pytest.mark.asyncio
    async def test_cached_false_short_circuits(self, db):
        client = AsyncMock()
        client.get.return_value = "0"
        service = SuppressionService(db, cache=CacheLayer(client=client))
        check = await service.is_contact_suppressed("any-id")
        assert check.is_suppressed is False
        client.setex.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repopulates_cache(self, db):
        contact, _, _ = await _setup(db)
        client = AsyncMock()
        client.get.return_value = None
        service = SuppressionService(db, cache=CacheLayer(client=client))
        await service.is_contact_suppressed(contact.id)
        keys = {call.args[0] for call in client.setex.await_args_list}
        assert keys == {f"suppression:contact:{contact.id}", "suppression:contact:ana@example.com"}

    @pytest.mark.asyncio
    async def test_fails_open(self, db):
        service = SuppressionService(db)
        service.contacts.get_contact = AsyncMock(side_effect=RuntimeError("db unreachable"))
        check = await service.is_contact_suppressed("some-id")
        assert check.is_suppressed is False


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_and_listing(self, db):
        contacts = ContactService(db)
        service = SuppressionService(db)
        for email, reason, by in [
            ("a@example.com", "hard_bounce", "ai"),
            ("b@example.com", "spam_complaint", "ai"),
            ("c@example.com", "manual", "ops"),
        ]:
            contact = await contacts.create_or_get_contact(email)
            await service.suppress_contact(contact.id, reason, by)

        stats = await service.get_suppression_stats()
        assert stats["total_suppressed"] == 3
        assert stats["suppressed_by_ai"] == 2
        assert stats["suppressed_manually"] == 1
        assert stats["hard_bounces"] == 1
        assert stats["spam_complaints"] == 1
        assert stats["recent_suppressions"] == 3

        page = await service.get_all_suppressed_contacts(page=1, page_size=2)
        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert len(page["contacts"]) == 2
