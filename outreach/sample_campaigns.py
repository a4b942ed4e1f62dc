"""Sample campaign catalog.

Point CAMPAIGNS_MODULE at a module shaped like this one:

    CAMPAIGNS_MODULE=outreach.sample_campaigns
"""
from datetime import timedelta

from outreach.catalog import Campaign, Catalog


def build_catalog(config, actions):
    send = actions.get("telegram") or actions["log"]

    onboarding = Campaign(
        "Onboarding",
        time_zone=config.default_time_zone,
        defaults={"action": send},
    )
    onboarding.step("welcome", wait=0, text="Welcome aboard!")
    onboarding.step(
        "first_tips",
        wait=timedelta(days=1),
        send_at="10:00",
        text="A few tips to get you started.",
    )
    onboarding.step(
        "power_features",
        wait=timedelta(days=3),
        send_at="10:00",
        segment=lambda contact: contact.traits.get("plan") == "pro",
        text="Pro features you may have missed.",
    )

    reengagement = Campaign(
        "Reengagement",
        time_zone=config.default_time_zone,
        segment=lambda contact: not contact.traits.get("active", True),
        defaults={"action": send, "wait": timedelta(days=7)},
    )
    reengagement.step("we_miss_you", send_at=9, text="We miss you!")
    reengagement.step("last_call", text="Still there?")

    return Catalog(
        [onboarding, reengagement],
        priority=config.campaign_priority,
        default_time_zone=config.default_time_zone,
    )
