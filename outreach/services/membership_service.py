"""Membership service - campaign enrollments and their receipts.

`MembershipStore` holds the queries the scheduler runs inside its own
transactions; `MembershipService` is the public add/remove API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.db import Database, db
from database.models import CampaignMembership, CampaignReceipt
from outreach.catalog import Campaign, Catalog, Step, UserRef
from outreach.services.schedule_calculator import calculate_scheduled_for
from outreach.utils.datetime_utils import to_db, utcnow

if TYPE_CHECKING:
    from outreach.services.scheduler import Scheduler

logger = logging.getLogger(__name__)


class MembershipStore:
    """Enrollment and receipt queries; every method runs inside the caller's session."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def _due_condition(self, now: datetime):
        now_db = to_db(now)
        scheduled = and_(
            CampaignMembership.scheduled_for.is_not(None),
            CampaignMembership.scheduled_for <= now_db,
        )

        # Legacy rows (no scheduled_for) are due once the current step's wait has elapsed.
        waits = []
        for campaign in self.catalog.campaigns:
            for step in campaign.steps:
                waits.append(
                    and_(
                        CampaignMembership.campaign_key == campaign.name,
                        CampaignMembership.step_key == step.name,
                        or_(
                            CampaignMembership.last_sent_at.is_(None),
                            CampaignMembership.last_sent_at <= to_db(now - step.wait),
                        ),
                    )
                )
        if not waits:
            return scheduled
        return or_(scheduled, and_(CampaignMembership.scheduled_for.is_(None), or_(*waits)))

    async def fetch_due(
        self,
        session: AsyncSession,
        now: datetime,
        user: UserRef | None = None,
    ) -> list[CampaignMembership]:
        """
        Enrollments to process this cycle, in processing order.

        A user's non-concurrent enrollments advance one campaign at a time: only
        the highest-priority one is returned, even if others are due. Rows of
        campaigns no longer in the catalog are left alone.
        """
        stmt = select(CampaignMembership).where(
            CampaignMembership.campaign_key.in_([c.name for c in self.catalog.campaigns]),
            self._due_condition(now),
        )
        if user is not None:
            stmt = stmt.where(
                CampaignMembership.user_type == user.type,
                CampaignMembership.user_id == int(user.id),
            )
        result = await session.execute(stmt.order_by(CampaignMembership.id.asc()))
        due = list(result.scalars().all())

        exclusive_users = {(m.user_type, int(m.user_id)) for m in due if not m.concurrent}
        if exclusive_users:
            active_ids = await self._active_exclusive_ids(session, exclusive_users)
            due = [m for m in due if m.concurrent or m.id in active_ids]

        due.sort(key=lambda m: (self.catalog.priority_index(m.campaign_key), m.id))
        return due

    async def _active_exclusive_ids(self, session: AsyncSession, users: set[tuple[str, int]]) -> set[int]:
        result = await session.execute(
            select(CampaignMembership).where(
                CampaignMembership.concurrent.is_(False),
                CampaignMembership.user_id.in_(sorted({user_id for _, user_id in users})),
            )
        )
        best: dict[tuple[str, int], CampaignMembership] = {}
        for membership in result.scalars().all():
            key = (membership.user_type, int(membership.user_id))
            if key not in users:
                continue
            current = best.get(key)
            rank = (self.catalog.priority_index(membership.campaign_key), membership.id)
            if current is None or rank < (self.catalog.priority_index(current.campaign_key), current.id):
                best[key] = membership
        return {m.id for m in best.values()}

    async def fetch_orphaned(self, session: AsyncSession, campaign: Campaign) -> list[CampaignMembership]:
        result = await session.execute(
            select(CampaignMembership).where(
                CampaignMembership.campaign_key == campaign.name,
                CampaignMembership.step_key.not_in([s.name for s in campaign.steps]),
            )
        )
        return list(result.scalars().all())

    async def reset_orphaned(self, session: AsyncSession, campaign: Campaign) -> int:
        """Point enrollments at a step the campaign no longer has back to its first step."""
        first = campaign.first_step
        if first is None:
            return 0
        result = await session.execute(
            update(CampaignMembership)
            .where(
                CampaignMembership.campaign_key == campaign.name,
                CampaignMembership.step_key.not_in([s.name for s in campaign.steps]),
            )
            .values(step_key=first.name, updated_at=to_db(utcnow()))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def lock(self, session: AsyncSession, membership_id: int) -> CampaignMembership | None:
        return await session.get(CampaignMembership, int(membership_id), with_for_update=True)

    async def find(self, session: AsyncSession, user: UserRef, campaign: Campaign) -> CampaignMembership | None:
        result = await session.execute(
            select(CampaignMembership).where(
                CampaignMembership.user_type == user.type,
                CampaignMembership.user_id == int(user.id),
                CampaignMembership.campaign_key == campaign.name,
            )
        )
        return result.scalar_one_or_none()

    async def memberships_for_update(
        self,
        session: AsyncSession,
        membership: CampaignMembership,
    ) -> list[CampaignMembership]:
        """
        Rows whose last_sent_at moves with this membership's sends.

        A concurrent membership only carries itself; a non-concurrent one
        carries every non-concurrent membership of the same user.
        """
        stmt = select(CampaignMembership)
        if membership.concurrent:
            stmt = stmt.where(CampaignMembership.id == membership.id)
        else:
            stmt = stmt.where(
                CampaignMembership.user_type == membership.user_type,
                CampaignMembership.user_id == membership.user_id,
                or_(CampaignMembership.concurrent.is_(False), CampaignMembership.id == membership.id),
            )
        result = await session.execute(stmt.order_by(CampaignMembership.id.asc()).with_for_update())
        return list(result.scalars().all())

    async def receipt_exists(self, session: AsyncSession, user: UserRef, step: Step) -> bool:
        result = await session.execute(
            select(CampaignReceipt.id)
            .where(
                CampaignReceipt.user_type == user.type,
                CampaignReceipt.user_id == int(user.id),
                CampaignReceipt.campaign_key == step.campaign_name,
                CampaignReceipt.step_key == step.name,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def create_receipt(
        self,
        session: AsyncSession,
        user: UserRef,
        step: Step,
        *,
        sent_at: datetime | None,
    ) -> bool:
        """
        Insert the receipt inside a savepoint.

        Returns False when another worker already wrote it (unique index hit).
        """
        receipt = CampaignReceipt(
            user_type=user.type,
            user_id=int(user.id),
            campaign_key=step.campaign_name,
            step_key=step.name,
            sent_at=to_db(sent_at),
            created_at=to_db(utcnow()),
        )
        try:
            async with session.begin_nested():
                session.add(receipt)
                await session.flush()
        except IntegrityError:
            logger.info(f"Receipt for {user} at {step.ref} already exists; another worker won the race")
            return False
        return True

    async def satisfied_step_keys(self, session: AsyncSession, user: UserRef, campaign: Campaign) -> set[str]:
        result = await session.execute(
            select(CampaignReceipt.step_key).where(
                CampaignReceipt.user_type == user.type,
                CampaignReceipt.user_id == int(user.id),
                CampaignReceipt.campaign_key == campaign.name,
            )
        )
        return set(result.scalars().all())

    async def delete_receipts(self, session: AsyncSession, user: UserRef, campaign: Campaign) -> int:
        result = await session.execute(
            delete(CampaignReceipt).where(
                CampaignReceipt.user_type == user.type,
                CampaignReceipt.user_id == int(user.id),
                CampaignReceipt.campaign_key == campaign.name,
            )
        )
        return int(result.rowcount or 0)

    async def delete_membership(self, session: AsyncSession, membership_id: int) -> int:
        result = await session.execute(delete(CampaignMembership).where(CampaignMembership.id == int(membership_id)))
        return int(result.rowcount or 0)


class MembershipService:
    """Add users to campaigns and remove them."""

    def __init__(
        self,
        catalog: Catalog,
        *,
        scheduler: "Scheduler | None" = None,
        store: MembershipStore | None = None,
        database: Database | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.scheduler = scheduler
        self.store = store or MembershipStore(catalog)
        self.db = database or db
        self.clock = clock

    def _campaign(self, campaign: Campaign | str) -> Campaign:
        key = campaign.name if isinstance(campaign, Campaign) else str(campaign)
        found = self.catalog.find_campaign(key)
        if found is None:
            raise KeyError(f"unknown campaign: {key}")
        return found

    async def add(
        self,
        campaign: Campaign | str,
        user: Any,
        *,
        concurrent: bool | None = None,
        send_now: bool = True,
        restart: bool = False,
    ) -> bool:
        """
        Enroll a user at the campaign's first step.

        Args:
            campaign: Campaign or campaign name
            user: user record (must expose `id`)
            concurrent: advance independently of the user's other campaigns
                (defaults to the campaign's setting)
            send_now: run the scheduler for this user right away when the
                first step has no wait
            restart: forget the user's receipts for this campaign first

        Returns:
            True if enrolled; False if the campaign has no steps, the user is
            outside its segment, or the user is already enrolled.
        """
        campaign = self._campaign(campaign)
        first = campaign.first_step
        if first is None:
            logger.warning(f"Campaign {campaign.name} has no steps; not enrolling user {getattr(user, 'id', user)}")
            return False
        if not campaign.in_segment(user):
            return False

        ref = UserRef.of(user, campaign.user_type)
        concurrent = campaign.concurrent if concurrent is None else bool(concurrent)
        now = self.clock()
        scheduled_for = calculate_scheduled_for(step=first, reference_time=now, time_zone=campaign.time_zone)

        async with self.db.session() as session:
            if restart:
                await self.store.delete_receipts(session, ref, campaign)

            existing = await self.store.find(session, ref, campaign)
            if existing is not None:
                if not restart:
                    return False
                existing.step_key = first.name
                existing.concurrent = concurrent
                existing.last_sent_at = to_db(now)
                existing.scheduled_for = to_db(scheduled_for)
            else:
                membership = CampaignMembership(
                    user_type=ref.type,
                    user_id=int(ref.id),
                    campaign_key=campaign.name,
                    step_key=first.name,
                    concurrent=concurrent,
                    last_sent_at=to_db(now),
                    scheduled_for=to_db(scheduled_for),
                    created_at=to_db(now),
                    updated_at=to_db(now),
                )
                try:
                    async with session.begin_nested():
                        session.add(membership)
                        await session.flush()
                except IntegrityError:
                    return False

        logger.info(f"Enrolled {ref} in {campaign.name} (scheduled_for={scheduled_for})")

        if send_now and first.wait == timedelta(0):
            if self.scheduler is None:
                raise RuntimeError("MembershipService.add(send_now=True) requires a scheduler")
            await self.scheduler.run(user=ref)
        return True

    async def remove(self, campaign: Campaign | str, user: Any) -> bool:
        campaign = self._campaign(campaign)
        ref = UserRef.of(user, campaign.user_type)
        async with self.db.session() as session:
            result = await session.execute(
                delete(CampaignMembership).where(
                    CampaignMembership.user_type == ref.type,
                    CampaignMembership.user_id == int(ref.id),
                    CampaignMembership.campaign_key == campaign.name,
                )
            )
            removed = int(result.rowcount or 0) > 0
        if removed:
            logger.info(f"Removed {ref} from {campaign.name}")
        return removed

    async def get(self, campaign: Campaign | str, user: Any) -> CampaignMembership | None:
        campaign = self._campaign(campaign)
        async with self.db.session() as session:
            return await self.store.find(session, UserRef.of(user, campaign.user_type), campaign)

    async def is_enrolled(self, campaign: Campaign | str, user: Any) -> bool:
        return await self.get(campaign, user) is not None

    async def current_step(self, campaign: Campaign | str, user: Any) -> Step | None:
        membership = await self.get(campaign, user)
        if membership is None:
            return None
        return self.catalog.find_step(membership.campaign_key, membership.step_key)

    async def enrolled_campaigns(self, user: Any) -> list[Campaign]:
        ref = UserRef.of(user)
        async with self.db.session() as session:
            result = await session.execute(
                select(CampaignMembership.campaign_key).where(
                    CampaignMembership.user_type == ref.type,
                    CampaignMembership.user_id == int(ref.id),
                )
            )
            keys: Iterable[str] = result.scalars().all()
        campaigns = [self.catalog.find_campaign(k) for k in keys]
        return sorted(
            (c for c in campaigns if c is not None),
            key=lambda c: self.catalog.priority_index(c.name),
        )
