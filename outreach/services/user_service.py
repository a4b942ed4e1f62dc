"""User service - resolve enrollment user references to user records."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from database.db import Database, db
from database.models import Contact
from outreach.catalog import UserRef

logger = logging.getLogger(__name__)


@runtime_checkable
class UserResolver(Protocol):
    async def resolve(self, ref: UserRef) -> Any | None:
        """Return the user, or None if it no longer exists."""
        ...


class ContactResolver:
    """Resolves `Contact` references from the contacts table."""

    user_type = "Contact"

    def __init__(self, database: Database | None = None):
        self.db = database or db

    async def resolve(self, ref: UserRef) -> Contact | None:
        if ref.type != self.user_type:
            logger.warning(f"ContactResolver cannot resolve user type {ref.type}")
            return None
        async with self.db.session() as session:
            return await session.get(Contact, int(ref.id))

    async def create(
        self,
        *,
        email: str | None = None,
        name: str | None = None,
        telegram_id: int | None = None,
        traits: dict | None = None,
    ) -> Contact:
        contact = Contact(email=email, name=name, telegram_id=telegram_id)
        contact.traits = traits or {}
        async with self.db.session() as session:
            session.add(contact)
            await session.flush()
        return contact

    async def update_traits(self, contact_id: int, **traits: Any) -> Contact | None:
        async with self.db.session() as session:
            contact = await session.get(Contact, int(contact_id))
            if not contact:
                return None
            merged = dict(contact.traits)
            merged.update(traits)
            contact.traits = merged
            return contact

    async def delete(self, contact_id: int) -> bool:
        async with self.db.session() as session:
            contact = await session.get(Contact, int(contact_id))
            if not contact:
                return False
            await session.delete(contact)
            return True
