"""Scheduler - advances campaign enrollments one step at a time.

For each due enrollment:
  1. Resolve the user (gone -> drop its receipts and the enrollment)
  2. Match the step, campaign and ancestor segments
  3. Write the receipt (sent or skipped) and refresh last_sent_at on a send
  4. Move to the next step without a receipt, or finish the enrollment
  5. After commit, fire the step's delivery action in the background

Safe to run from several workers at once: each enrollment is decided in its
own transaction with the membership row locked, and the receipt's unique
index turns a lost race into a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from database.db import Database, db
from database.models import CampaignMembership
from outreach.catalog import Campaign, Catalog, Step, UserRef
from outreach.exceptions import SchedulerRunError
from outreach.services.membership_service import MembershipStore
from outreach.services.schedule_calculator import calculate_scheduled_for, ensure_future_date
from outreach.services.user_service import UserResolver
from outreach.utils.datetime_utils import from_db, to_db, utcnow

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
ALREADY_HANDLED = "already_handled"
STALE = "stale"
REMOVED = "removed"
UNKNOWN_STEP = "unknown_step"


@dataclass(frozen=True)
class SchedulerRunResult:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    removed: int = 0
    stale: int = 0
    repaired: int = 0


class Scheduler:
    def __init__(
        self,
        catalog: Catalog,
        users: UserResolver,
        *,
        store: MembershipStore | None = None,
        database: Database | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.users = users
        self.store = store or MembershipStore(catalog)
        self.db = database or db
        self.clock = clock
        self._deliveries: set[asyncio.Task] = set()

    async def run(self, user: UserRef | Any | None = None) -> SchedulerRunResult:
        """
        Run one scheduling cycle, optionally for a single user.

        Raises:
            SchedulerRunError: after the whole cycle, if any enrollment failed
        """
        user_ref = UserRef.of(user) if user is not None else None
        repaired = await self.repair_orphans()

        now = self.clock()
        async with self.db.session() as session:
            memberships = await self.store.fetch_due(session, now, user_ref)

        counts = {SENT: 0, SKIPPED: 0, REMOVED: 0, STALE: 0}
        failures: list[tuple[int, BaseException]] = []
        for membership in memberships:
            try:
                outcome = await self.process(membership)
            except Exception as e:
                logger.error(f"Failed to process membership {membership.id}: {e}", exc_info=True)
                failures.append((int(membership.id), e))
                continue
            if outcome in counts:
                counts[outcome] += 1

        result = SchedulerRunResult(
            processed=len(memberships) - len(failures),
            sent=counts[SENT],
            skipped=counts[SKIPPED],
            removed=counts[REMOVED],
            stale=counts[STALE],
            repaired=repaired,
        )
        if memberships:
            logger.info(
                f"Scheduler run: due={len(memberships)} sent={result.sent} skipped={result.skipped} "
                f"removed={result.removed} stale={result.stale} failed={len(failures)}"
            )
        if failures:
            raise SchedulerRunError(failures) from failures[0][1]
        return result

    async def repair_orphans(self) -> int:
        """Reset enrollments whose step no longer exists to their campaign's first step."""
        repaired = 0
        async with self.db.session() as session:
            for campaign in self.catalog.campaigns:
                if not campaign.steps:
                    continue
                count = await self.store.reset_orphaned(session, campaign)
                if count:
                    logger.info(f"Reset {count} orphaned membership(s) in {campaign.name} to {campaign.first_step.name}")
                repaired += count
        return repaired

    async def process(self, membership: CampaignMembership) -> str:
        """Decide and advance one enrollment. Returns the outcome name."""
        campaign = self.catalog.find_campaign(membership.campaign_key)
        step = campaign.find_step(membership.step_key) if campaign else None
        if campaign is None or step is None:
            logger.warning(
                f"Membership {membership.id} points at unknown step "
                f"{membership.campaign_key}/{membership.step_key}; skipping"
            )
            return UNKNOWN_STEP

        ref = UserRef(membership.user_type, int(membership.user_id))
        user = await self.users.resolve(ref)
        if user is None:
            await self._remove_missing_user(membership, ref, campaign)
            return REMOVED

        delivery = None
        async with self.db.session() as session:
            current = await self.store.lock(session, membership.id)
            if current is None or current.step_key != step.name:
                # Another worker advanced or finished this enrollment first.
                return STALE

            now = self.clock()
            if await self.store.receipt_exists(session, ref, step):
                outcome = ALREADY_HANDLED
            elif step.in_segment(user):
                if not await self.store.create_receipt(session, ref, step, sent_at=now):
                    return STALE
                for related in await self.store.memberships_for_update(session, current):
                    related.last_sent_at = to_db(now)
                delivery = (step, user)
                outcome = SENT
            else:
                if not await self.store.create_receipt(session, ref, step, sent_at=None):
                    return STALE
                outcome = SKIPPED

            logger.debug(f"{ref} at {step.ref}: {outcome}")
            await self._advance(session, campaign, step, current, ref, now)

        if delivery is not None:
            self._dispatch(*delivery)
        return outcome

    async def _advance(
        self,
        session,
        campaign: Campaign,
        step: Step,
        membership: CampaignMembership,
        ref: UserRef,
        now: datetime,
    ) -> Step | None:
        next_step = await self.next_step(session, campaign, step, ref)
        if next_step is None:
            await session.delete(membership)
            logger.info(f"{ref} completed {campaign.name}")
            return None

        membership.step_key = next_step.name
        membership.scheduled_for = to_db(
            self.next_scheduled_for(campaign, next_step, from_db(membership.last_sent_at), now)
        )
        return next_step

    async def next_step(self, session, campaign: Campaign, step: Step, ref: UserRef) -> Step | None:
        """First step after `step` the user has no receipt for."""
        satisfied = await self.store.satisfied_step_keys(session, ref, campaign)
        for candidate in campaign.steps_after(step):
            if candidate.name not in satisfied:
                return candidate
        return None

    def next_scheduled_for(
        self,
        campaign: Campaign,
        next_step: Step,
        last_sent_at: datetime | None,
        now: datetime,
    ) -> datetime | None:
        # Time from the last step that actually fired, so skipped steps don't delay the next one.
        scheduled_for = calculate_scheduled_for(
            step=next_step,
            reference_time=last_sent_at or now,
            time_zone=campaign.time_zone,
        )
        # After a skip that reference can sit on a past date; don't fire on a bygone day.
        return ensure_future_date(
            scheduled_for=scheduled_for,
            send_at=next_step.send_at,
            time_zone=campaign.time_zone,
            now=now,
        )

    async def _remove_missing_user(self, membership: CampaignMembership, ref: UserRef, campaign: Campaign) -> None:
        async with self.db.session() as session:
            receipts = await self.store.delete_receipts(session, ref, campaign)
            await self.store.delete_membership(session, membership.id)
        logger.info(f"User {ref} no longer exists; removed from {campaign.name} ({receipts} receipt(s) deleted)")

    def _dispatch(self, step: Step, user: Any) -> None:
        task = asyncio.create_task(self._deliver(step, user))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, step: Step, user: Any) -> None:
        try:
            await step.action.fire(user, step)
        except Exception as e:
            logger.error(f"Delivery of {step.ref} to user {getattr(user, 'id', user)} failed: {e}", exc_info=True)

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def drain(self) -> None:
        """Wait for every dispatched delivery to finish."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
