"""Campaign catalog - campaign and step definitions.

The catalog is built once at process start and handed to the scheduler by
reference. Campaigns are mutable only while being defined; registering them in
a `Catalog` freezes them.

Example:
    onboarding = Campaign("Onboarding", time_zone="America/New_York")
    onboarding.step("welcome", wait=0, text="Hi!")
    onboarding.step("tips", wait=timedelta(days=2), send_at="10:00", text="...")
    catalog = Catalog([onboarding], priority=["Onboarding"])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence, Union

from outreach.exceptions import CatalogError
from outreach.services.delivery import DeliveryAction, LogAction
from outreach.services.schedule_calculator import parse_send_at
from outreach.utils.datetime_utils import get_zone

logger = logging.getLogger(__name__)

# A segment is a predicate over a user, or the name of a truthy attribute/method on it.
Segment = Union[Callable[[Any], bool], str, None]

DEFAULT_STEP_OPTIONS: dict[str, Any] = {
    "wait": timedelta(days=2),
    "segment": None,
    "action": LogAction(),
}

_UNSET = object()


def matches_segment(user: Any, segment: Segment) -> bool:
    if segment is None:
        return True
    if isinstance(segment, str):
        value = getattr(user, segment, None)
        if callable(value):
            value = value()
        return bool(value)
    return bool(segment(user))


@dataclass(frozen=True)
class UserRef:
    """Typed reference to a user row: (user_type, user_id)."""

    type: str
    id: int

    @classmethod
    def of(cls, user: Any, user_type: str | None = None) -> "UserRef":
        """Reference for a user object; the type defaults to its class name (Contact -> "Contact")."""
        if isinstance(user, UserRef):
            return user
        return cls(str(user_type or type(user).__name__), int(user.id))

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class StepRef:
    """Typed reference to a step, resolved through `Catalog.find_step`."""

    campaign_key: str
    step_key: str

    def __str__(self) -> str:
        return f"{self.campaign_key}/{self.step_key}"


@dataclass(frozen=True, eq=False)
class Step:
    name: str
    position: int
    wait: timedelta
    campaign: "Campaign" = field(repr=False)
    send_at: Any = None
    segment: Segment = field(default=None, repr=False)
    action: DeliveryAction = field(default_factory=LogAction, repr=False)
    params: Mapping[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        # Malformed send_at is a definition error; fail before anything is scheduled.
        parse_send_at(self.send_at)
        validate_step = getattr(self.action, "validate_step", None)
        if callable(validate_step):
            validate_step(self)

    @property
    def ref(self) -> StepRef:
        return StepRef(self.campaign.name, self.name)

    @property
    def campaign_name(self) -> str:
        return self.campaign.name

    @property
    def has_send_at(self) -> bool:
        return self.send_at is not None

    @property
    def send_at_hour(self) -> int | None:
        parsed = parse_send_at(self.send_at)
        return parsed[0] if parsed else None

    @property
    def send_at_minute(self) -> int | None:
        parsed = parse_send_at(self.send_at)
        return parsed[1] if parsed else None

    def in_segment(self, user: Any) -> bool:
        """Step segment and the campaign's (and every ancestor's) segment must all match."""
        return self.campaign.in_segment(user) and matches_segment(user, self.segment)


class Campaign:
    """An ordered list of steps sharing a time zone and audience segment."""

    def __init__(
        self,
        name: str,
        *,
        time_zone: str | None = None,
        segment: Segment = None,
        parent: "Campaign | None" = None,
        send_at: Any = None,
        user_type: str = "Contact",
        concurrent: bool = False,
        defaults: Mapping[str, Any] | None = None,
    ):
        name = (name or "").strip()
        if not name:
            raise CatalogError("campaign name is empty")
        if time_zone is not None:
            get_zone(time_zone)
        parse_send_at(send_at)

        self.name = name
        self.segment = segment
        self.parent = parent
        self.send_at = send_at
        self.user_type = str(user_type)
        self.concurrent = bool(concurrent)
        self.defaults = {**DEFAULT_STEP_OPTIONS, **dict(defaults or {})}
        self._time_zone = time_zone
        self._default_time_zone = "UTC"
        self._steps: list[Step] = []
        self._frozen = False

    @property
    def time_zone(self) -> str:
        return self._time_zone or self._default_time_zone

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps)

    @property
    def first_step(self) -> Step | None:
        return self._steps[0] if self._steps else None

    @property
    def frozen(self) -> bool:
        return self._frozen

    def step(
        self,
        name: str,
        *,
        wait: timedelta | int | float | Any = _UNSET,
        send_at: Any = _UNSET,
        segment: Segment | Any = _UNSET,
        action: DeliveryAction | Any = _UNSET,
        **params: Any,
    ) -> Step:
        """Append a step. Unset options fall back to the campaign defaults."""
        if self._frozen:
            raise CatalogError(f"campaign {self.name} is frozen; steps cannot be added", {"step": name})

        name = (name or "").strip()
        if not name:
            raise CatalogError(f"step name is empty in campaign {self.name}")
        if any(s.name == name for s in self._steps):
            raise CatalogError(f"duplicate step {name} in campaign {self.name}")

        wait = self.defaults["wait"] if wait is _UNSET else wait
        if not isinstance(wait, timedelta):
            wait = timedelta(seconds=int(wait or 0))
        if wait < timedelta(0):
            raise CatalogError(f"step {self.name}/{name} has a negative wait")

        step = Step(
            name=name,
            position=len(self._steps),
            wait=wait,
            campaign=self,
            send_at=self.send_at if send_at is _UNSET else send_at,
            segment=self.defaults["segment"] if segment is _UNSET else segment,
            action=self.defaults["action"] if action is _UNSET else action,
            params=dict(params),
        )
        self._steps.append(step)
        return step

    def find_step(self, name: str) -> Step | None:
        for step in self._steps:
            if step.name == name:
                return step
        return None

    def steps_after(self, step: Step) -> tuple[Step, ...]:
        return tuple(self._steps[step.position + 1:])

    def in_segment(self, user: Any) -> bool:
        if self.parent is not None and not self.parent.in_segment(user):
            return False
        return matches_segment(user, self.segment)

    def freeze(self, *, default_time_zone: str = "UTC") -> None:
        self._default_time_zone = default_time_zone
        self._frozen = True

    def __repr__(self):
        return f"<Campaign(name={self.name}, steps={len(self._steps)}, time_zone={self.time_zone})>"


class Catalog:
    """Read-only registry of campaigns, ordered for processing by priority."""

    def __init__(
        self,
        campaigns: Iterable[Campaign],
        *,
        priority: Sequence[str] = (),
        default_time_zone: str = "UTC",
    ):
        get_zone(default_time_zone)

        self._campaigns: dict[str, Campaign] = {}
        for campaign in campaigns:
            if campaign.name in self._campaigns:
                raise CatalogError(f"duplicate campaign {campaign.name}")
            self._campaigns[campaign.name] = campaign

        priority = [str(p).strip() for p in priority if str(p).strip()]
        unknown = [p for p in priority if p not in self._campaigns]
        if unknown:
            raise CatalogError("priority lists unknown campaigns", {"campaigns": unknown})
        self.priority: tuple[str, ...] = tuple(dict.fromkeys(priority))
        self.default_time_zone = default_time_zone

        for campaign in self._campaigns.values():
            campaign.freeze(default_time_zone=default_time_zone)

        self._order = {
            campaign.name: index for index, campaign in enumerate(self._ordered())
        }
        logger.info(f"Campaign catalog ready: {len(self._campaigns)} campaign(s)")

    def _ordered(self) -> list[Campaign]:
        listed = [self._campaigns[name] for name in self.priority]
        rest = [c for c in self._campaigns.values() if c.name not in self.priority]
        return listed + rest

    @property
    def campaigns(self) -> tuple[Campaign, ...]:
        """Campaigns in definition order."""
        return tuple(self._campaigns.values())

    def campaigns_ordered_by_priority(self) -> tuple[Campaign, ...]:
        return tuple(self._ordered())

    def priority_index(self, campaign_key: str) -> int:
        """Processing rank; campaigns missing from the catalog sort last."""
        return self._order.get(campaign_key, len(self._order))

    def find_campaign(self, key: str) -> Campaign | None:
        return self._campaigns.get(key)

    def find_step(self, campaign_key: str, step_key: str) -> Step | None:
        campaign = self._campaigns.get(campaign_key)
        if campaign is None:
            return None
        return campaign.find_step(step_key)

    def resolve(self, ref: StepRef) -> Step | None:
        return self.find_step(ref.campaign_key, ref.step_key)

    def __iter__(self) -> Iterator[Campaign]:
        return iter(self.campaigns_ordered_by_priority())

    def __len__(self) -> int:
        return len(self._campaigns)

    def __contains__(self, key: object) -> bool:
        return key in self._campaigns
