from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from database.models import CampaignMembership, CampaignReceipt
from outreach.catalog import Campaign, Catalog
from outreach.services.membership_service import MembershipService


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def drip(action, name="Drip", **kwargs) -> Campaign:
    campaign = Campaign(name, defaults={"action": action}, **kwargs)
    campaign.step("intro", wait=0)
    campaign.step("follow_up", wait=timedelta(days=2))
    return campaign


@pytest.mark.asyncio
async def test_add_enrolls_at_first_step(services, clock, action, contact):
    campaign = drip(action)
    svc = services(Catalog([campaign]))

    assert await svc.memberships.add(campaign, contact, send_now=False) is True

    membership = await svc.memberships.get(campaign, contact)
    assert membership.user_type == "Contact"
    assert membership.user_id == contact.id
    assert membership.step_key == "intro"
    assert membership.concurrent is False
    assert membership.last_sent_at == clock.now.replace(tzinfo=None)
    assert membership.scheduled_for is None
    assert action.fired == []


@pytest.mark.asyncio
async def test_add_accepts_campaign_name(services, action, contact):
    svc = services(Catalog([drip(action)]))

    assert await svc.memberships.add("Drip", contact, send_now=False)
    assert await svc.memberships.is_enrolled("Drip", contact)


@pytest.mark.asyncio
async def test_add_unknown_campaign(services, action, contact):
    svc = services(Catalog([drip(action)]))

    with pytest.raises(KeyError):
        await svc.memberships.add("Nope", contact)


@pytest.mark.asyncio
async def test_add_twice_is_refused(services, action, contact):
    campaign = drip(action)
    svc = services(Catalog([campaign]))

    assert await svc.memberships.add(campaign, contact, send_now=False)
    assert await svc.memberships.add(campaign, contact, send_now=False) is False


@pytest.mark.asyncio
async def test_add_loses_insert_race(database, services, action, contact, monkeypatch):
    campaign = drip(action)
    svc = services(Catalog([campaign]))
    assert await svc.memberships.add(campaign, contact, send_now=False)

    # Another worker inserted the row after our lookup.
    async def not_found(session, user, campaign):
        return None

    monkeypatch.setattr(svc.store, "find", not_found)

    assert await svc.memberships.add(campaign, contact) is False

    async with database.session() as session:
        result = await session.execute(select(CampaignMembership).where(CampaignMembership.user_id == contact.id))
        memberships = list(result.scalars().all())
    assert [m.step_key for m in memberships] == ["intro"]
    assert action.fired == []


@pytest.mark.asyncio
async def test_add_outside_campaign_segment(services, action, contact):
    campaign = drip(action, segment=lambda u: u.traits.get("plan") == "free")
    svc = services(Catalog([campaign]))

    assert await svc.memberships.add(campaign, contact) is False
    assert not await svc.memberships.is_enrolled(campaign, contact)


@pytest.mark.asyncio
async def test_add_with_attribute_segment(services, users, action):
    campaign = drip(action, segment="telegram_id")
    svc = services(Catalog([campaign]))
    without = await users.create(email="a@example.com")
    with_chat = await users.create(email="b@example.com", telegram_id=4242)

    assert await svc.memberships.add(campaign, without, send_now=False) is False
    assert await svc.memberships.add(campaign, with_chat, send_now=False) is True


@pytest.mark.asyncio
async def test_add_to_campaign_without_steps(services, contact):
    empty = Campaign("Empty")
    svc = services(Catalog([empty]))

    assert await svc.memberships.add(empty, contact) is False


@pytest.mark.asyncio
async def test_add_sends_first_step_right_away(services, action, contact):
    campaign = drip(action)
    svc = services(Catalog([campaign]))

    assert await svc.memberships.add(campaign, contact)
    await svc.scheduler.drain()

    assert action.steps_for(contact) == ["intro"]
    step = await svc.memberships.current_step(campaign, contact)
    assert step.name == "follow_up"


@pytest.mark.asyncio
async def test_add_does_not_send_when_first_step_waits(services, action, contact):
    campaign = Campaign("Slow", defaults={"action": action})
    campaign.step("later", wait=timedelta(hours=1))
    svc = services(Catalog([campaign]))

    assert await svc.memberships.add(campaign, contact)
    await svc.scheduler.drain()

    assert action.fired == []


@pytest.mark.asyncio
async def test_add_send_now_without_scheduler(database, clock, action, contact):
    campaign = drip(action)
    memberships = MembershipService(Catalog([campaign]), database=database, clock=clock)

    with pytest.raises(RuntimeError):
        await memberships.add(campaign, contact)


@pytest.mark.asyncio
async def test_concurrent_defaults_to_campaign_setting(services, action, contact):
    campaign = drip(action, concurrent=True)
    other = drip(action, name="Other")
    svc = services(Catalog([campaign, other]))

    await svc.memberships.add(campaign, contact, send_now=False)
    await svc.memberships.add(other, contact, send_now=False, concurrent=True)

    assert (await svc.memberships.get(campaign, contact)).concurrent is True
    assert (await svc.memberships.get(other, contact)).concurrent is True


@pytest.mark.asyncio
async def test_restart_forgets_receipts(database, services, clock, action, contact):
    campaign = drip(action)
    svc = services(Catalog([campaign]))
    await svc.memberships.add(campaign, contact)
    await svc.scheduler.drain()
    assert action.steps_for(contact) == ["intro"]

    clock.advance(hours=1)
    assert await svc.memberships.add(campaign, contact, restart=True)
    await svc.scheduler.drain()

    assert action.steps_for(contact) == ["intro", "intro"]
    async with database.session() as session:
        result = await session.execute(select(CampaignReceipt).where(CampaignReceipt.user_id == contact.id))
        receipts = list(result.scalars().all())
    assert len(receipts) == 1


@pytest.mark.asyncio
async def test_add_schedules_send_at(services, clock, action, contact):
    campaign = Campaign("Digest", time_zone="Europe/Berlin", defaults={"action": action})
    campaign.step("weekly", wait=timedelta(days=7), send_at="8:30")
    svc = services(Catalog([campaign]))
    clock.set(utc(2025, 1, 20, 12, 0))

    await svc.memberships.add(campaign, contact)

    membership = await svc.memberships.get(campaign, contact)
    # 08:30 CET is 07:30 UTC
    assert membership.scheduled_for == datetime(2025, 1, 27, 7, 30)


@pytest.mark.asyncio
async def test_remove(services, action, contact):
    campaign = drip(action)
    svc = services(Catalog([campaign]))
    await svc.memberships.add(campaign, contact, send_now=False)

    assert await svc.memberships.remove(campaign, contact) is True
    assert await svc.memberships.remove(campaign, contact) is False
    assert await svc.memberships.current_step(campaign, contact) is None


@pytest.mark.asyncio
async def test_enrolled_campaigns_in_priority_order(services, action, contact):
    first = drip(action, name="First")
    second = drip(action, name="Second")
    third = drip(action, name="Third")
    svc = services(Catalog([first, second, third], priority=["Third", "First"]))
    for campaign in (first, second, third):
        await svc.memberships.add(campaign, contact, send_now=False)

    enrolled = await svc.memberships.enrolled_campaigns(contact)

    assert [c.name for c in enrolled] == ["Third", "First", "Second"]


@pytest.mark.asyncio
async def test_enrolled_campaigns_ignores_unknown_keys(database, services, action, contact):
    svc = services(Catalog([drip(action)]))
    await svc.memberships.add("Drip", contact, send_now=False)
    async with database.session() as session:
        session.add(
            CampaignMembership(
                user_type="Contact",
                user_id=contact.id,
                campaign_key="Retired",
                step_key="one",
                concurrent=False,
            )
        )

    enrolled = await svc.memberships.enrolled_campaigns(contact)

    assert [c.name for c in enrolled] == ["Drip"]


@pytest.mark.asyncio
async def test_store_finds_orphaned_memberships(database, services, action, contact):
    campaign = drip(action)
    svc = services(Catalog([campaign]))
    await svc.memberships.add(campaign, contact, send_now=False)
    async with database.session() as session:
        await session.execute(
            CampaignMembership.__table__.update()
            .where(CampaignMembership.user_id == contact.id)
            .values(step_key="renamed_step")
        )

    async with database.session() as session:
        orphaned = await svc.store.fetch_orphaned(session, campaign)
        assert [m.step_key for m in orphaned] == ["renamed_step"]
        assert await svc.store.reset_orphaned(session, campaign) == 1

    async with database.session() as session:
        assert await svc.store.fetch_orphaned(session, campaign) == []
    assert (await svc.memberships.current_step(campaign, contact)).name == "intro"
