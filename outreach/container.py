"""Service container - wires configuration, the campaign catalog, and services."""
import importlib
import logging
from dataclasses import dataclass

from aiogram import Bot

from database.db import Database, db
from outreach.catalog import Catalog
from outreach.config import Config
from outreach.services.delivery import DeliveryAction, LogAction, TelegramMessageAction
from outreach.services.membership_service import MembershipService, MembershipStore
from outreach.services.scheduler import Scheduler
from outreach.services.user_service import ContactResolver

logger = logging.getLogger(__name__)


def load_catalog(config: Config, actions: dict[str, DeliveryAction]) -> Catalog:
    """
    Import `config.campaigns_module` and build the catalog it defines.

    The module exposes either `build_catalog(config, actions) -> Catalog` or a
    ready `catalog` attribute. `actions` holds the delivery actions available
    in this process ("log", and "telegram" when BOT_TOKEN is set).
    """
    module = importlib.import_module(config.campaigns_module)

    build = getattr(module, "build_catalog", None)
    if callable(build):
        catalog = build(config, actions)
    else:
        catalog = getattr(module, "catalog", None)

    if not isinstance(catalog, Catalog):
        raise RuntimeError(
            f"{config.campaigns_module} must define build_catalog(config, actions) or a `catalog` Catalog"
        )
    return catalog


@dataclass
class ServiceContainer:
    """Simple dependency container shared by the runner and the scheduler worker."""

    config: Config
    database: Database
    catalog: Catalog
    users: ContactResolver
    scheduler: Scheduler
    memberships: MembershipService
    bot: Bot | None = None

    @classmethod
    async def create(
        cls,
        config: Config,
        *,
        database: Database | None = None,
        catalog: Catalog | None = None,
    ) -> "ServiceContainer":
        """
        Build the service container with all dependencies.

        Args:
            config: Loaded Config instance
            database: Database handle (defaults to the shared one)
            catalog: Prebuilt catalog (defaults to loading config.campaigns_module)

        Returns:
            ServiceContainer with initialized services
        """
        logger.info("Building service container...")

        database = database or db
        bot = Bot(token=config.bot_token) if config.telegram_enabled else None

        actions: dict[str, DeliveryAction] = {"log": LogAction()}
        if bot is not None:
            actions["telegram"] = TelegramMessageAction(bot)

        if catalog is None:
            catalog = load_catalog(config, actions)

        users = ContactResolver(database)
        store = MembershipStore(catalog)
        scheduler = Scheduler(catalog, users, store=store, database=database)
        memberships = MembershipService(catalog, scheduler=scheduler, store=store, database=database)

        logger.info(f"Service container ready ({len(catalog)} campaign(s))")

        return cls(
            config=config,
            database=database,
            catalog=catalog,
            users=users,
            scheduler=scheduler,
            memberships=memberships,
            bot=bot,
        )

    async def cleanup(self):
        """Drain deliveries and close external sessions."""
        await self.scheduler.drain()
        if self.bot is not None:
            await self.bot.session.close()
