from datetime import timedelta
from types import SimpleNamespace

import pytest

from outreach.catalog import Campaign, Catalog, StepRef, UserRef
from outreach.exceptions import CatalogError, InvalidSendAtFormat, InvalidTimeZone, SendAtOutOfRange
from outreach.services.delivery import LogAction


def test_step_defaults():
    campaign = Campaign("Welcome")
    step = campaign.step("hello")

    assert step.wait == timedelta(days=2)
    assert step.segment is None
    assert isinstance(step.action, LogAction)
    assert step.send_at is None
    assert step.position == 0
    assert step.ref == StepRef("Welcome", "hello")


def test_campaign_defaults_override_step_defaults():
    action = LogAction()
    campaign = Campaign("Welcome", defaults={"wait": timedelta(hours=3), "action": action})
    step = campaign.step("hello", subject="Hi")

    assert step.wait == timedelta(hours=3)
    assert step.action is action
    assert step.params == {"subject": "Hi"}


def test_integer_wait_is_seconds():
    campaign = Campaign("Welcome")
    assert campaign.step("now", wait=0).wait == timedelta(0)
    assert campaign.step("soon", wait=90).wait == timedelta(seconds=90)


def test_campaign_send_at_is_step_fallback():
    campaign = Campaign("Welcome", time_zone="UTC", send_at="10:00")
    first = campaign.step("one", wait=timedelta(days=1))
    second = campaign.step("two", wait=timedelta(days=1), send_at="14:00")

    assert first.send_at == "10:00"
    assert second.send_at == "14:00"
    assert (first.send_at_hour, first.send_at_minute) == (10, 0)


def test_explicit_none_send_at_disables_campaign_default():
    campaign = Campaign("Welcome", send_at=9)
    assert campaign.step("one", send_at=None).has_send_at is False


def test_invalid_send_at_fails_at_definition():
    campaign = Campaign("Welcome")
    with pytest.raises(SendAtOutOfRange):
        campaign.step("one", send_at="25:00")
    with pytest.raises(InvalidSendAtFormat):
        Campaign("Broken", send_at=[10, 30])


def test_invalid_time_zone_fails_at_definition():
    with pytest.raises(InvalidTimeZone):
        Campaign("Welcome", time_zone="Nowhere/Special")
    with pytest.raises(InvalidTimeZone):
        Catalog([], default_time_zone="Nowhere/Special")


def test_step_validation_errors():
    campaign = Campaign("Welcome")
    campaign.step("one")

    with pytest.raises(CatalogError):
        campaign.step("one")
    with pytest.raises(CatalogError):
        campaign.step("  ")
    with pytest.raises(CatalogError):
        campaign.step("back", wait=timedelta(seconds=-1))
    with pytest.raises(CatalogError):
        Campaign("")


def test_action_can_validate_its_steps():
    class NeedsText:
        async def fire(self, user, step):
            pass

        def validate_step(self, step):
            if "text" not in step.params:
                raise CatalogError(f"{step.ref} needs text")

    campaign = Campaign("Welcome", defaults={"action": NeedsText()})
    campaign.step("ok", text="hi")
    with pytest.raises(CatalogError):
        campaign.step("missing")


def test_catalog_freezes_campaigns():
    campaign = Campaign("Welcome")
    campaign.step("one")
    Catalog([campaign], default_time_zone="Europe/Paris")

    assert campaign.frozen
    assert campaign.time_zone == "Europe/Paris"
    with pytest.raises(CatalogError):
        campaign.step("two")


def test_campaign_time_zone_wins_over_catalog_default():
    campaign = Campaign("Welcome", time_zone="Asia/Tokyo")
    Catalog([campaign], default_time_zone="Europe/Paris")

    assert campaign.time_zone == "Asia/Tokyo"


def test_duplicate_campaign_names():
    with pytest.raises(CatalogError):
        Catalog([Campaign("Welcome"), Campaign("Welcome")])


def test_priority_must_name_known_campaigns():
    with pytest.raises(CatalogError) as excinfo:
        Catalog([Campaign("Welcome")], priority=["Welcome", "Ghost"])
    assert excinfo.value.details == {"campaigns": ["Ghost"]}


def test_priority_order():
    a, b, c = Campaign("A"), Campaign("B"), Campaign("C")
    catalog = Catalog([a, b, c], priority=["C", "A"])

    assert [x.name for x in catalog] == ["C", "A", "B"]
    assert [x.name for x in catalog.campaigns] == ["A", "B", "C"]
    assert catalog.priority_index("C") < catalog.priority_index("A") < catalog.priority_index("B")
    assert catalog.priority_index("Missing") == len(catalog)


def test_lookup():
    campaign = Campaign("Welcome")
    one = campaign.step("one")
    two = campaign.step("two")
    catalog = Catalog([campaign])

    assert "Welcome" in catalog
    assert catalog.find_campaign("Welcome") is campaign
    assert catalog.find_step("Welcome", "two") is two
    assert catalog.find_step("Welcome", "three") is None
    assert catalog.find_step("Other", "one") is None
    assert catalog.resolve(one.ref) is one
    assert campaign.first_step is one
    assert campaign.steps_after(one) == (two,)
    assert campaign.steps_after(two) == ()


def test_segments():
    parent = Campaign("Paid", segment=lambda u: u.plan != "free")
    child = Campaign("Upsell", parent=parent, segment="engaged")
    step = child.step("offer", segment=lambda u: u.seats > 5)

    big = SimpleNamespace(plan="team", engaged=True, seats=10)
    small = SimpleNamespace(plan="team", engaged=True, seats=2)
    idle = SimpleNamespace(plan="team", engaged=False, seats=10)
    free = SimpleNamespace(plan="free", engaged=True, seats=10)

    assert step.in_segment(big)
    assert not step.in_segment(small)
    assert child.in_segment(small)
    assert not child.in_segment(idle)
    assert not child.in_segment(free)


def test_method_segment_is_called():
    class Account:
        id = 7

        def is_active(self):
            return False

    campaign = Campaign("Active", segment="is_active")
    assert campaign.in_segment(Account()) is False


def test_user_ref():
    contact = SimpleNamespace(id="12")
    ref = UserRef.of(contact, "Contact")

    assert ref == UserRef("Contact", 12)
    assert UserRef.of(ref) is ref
    assert str(ref) == "Contact:12"
    assert UserRef.of(SimpleNamespace(id=3)).type == "SimpleNamespace"
