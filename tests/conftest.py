from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from database.db import Database
from outreach.catalog import Catalog
from outreach.services.membership_service import MembershipService, MembershipStore
from outreach.services.scheduler import Scheduler
from outreach.services.user_service import ContactResolver

class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

class RecordingAction:
    def __init__(self):
        self.fired: list[tuple[int, str, str]] = []

    async def fire(self, user, step) -> None:
        self.fired.append((user.id, step.campaign_name, step.name))

    def steps_for(self, user) -> list[str]:
        return [step for user_id, _, step in self.fired if user_id == user.id]


class Services:
    def __init__(self, catalog: Catalog, database: Database, clock: FakeClock):
        self.catalog = catalog
        self.users = ContactResolver(database)
        self.store = MembershipStore(catalog)
        self.scheduler = Scheduler(catalog, self.users, store=self.store, database=database, clock=clock)
        self.memberships = MembershipService(
            catalog,
            scheduler=self.scheduler,
            store=self.store,
            database=database,
            clock=clock,
        )

    async def run(self, **kwargs):
        result = await self.scheduler.run(**kwargs)
        await self.scheduler.drain()
        return result

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)

@pytest_asyncio.fixture
async def database(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'outreach.db'}")
    await database.create_tables()
    yield database
    await database.close()

@pytest.fixture
def clock():
    return FakeClock(utc(2025, 1, 20, 12, 0))

@pytest.fixture
def action():
    return RecordingAction()

@pytest.fixture
def users(database):
    return ContactResolver(database)

@pytest.fixture
def services(database, clock):
    def _build(catalog: Catalog) -> Services:
        return Services(catalog, database, clock)

    return _build

@pytest_asyncio.fixture
async def contact(users):
    return await users.create(email="ada@example.com", name="Ada", traits={"plan": "pro"})
