"""Database models - enrollments, receipts and contacts."""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Index, BigInteger, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Contact(Base):
    """A reachable person that campaigns are run against."""

    __tablename__ = "contacts"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    email = Column(String, nullable=True)
    name = Column(String, nullable=True)
    telegram_id = Column(BigInteger, nullable=True)
    traits_json = Column("traits", Text, nullable=False, default="{}")  # JSON string (avoid dialect-specific JSON type)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_contacts_email", "email"),
    )

    @property
    def traits(self) -> dict:
        try:
            data = json.loads(self.traits_json or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @traits.setter
    def traits(self, value: dict) -> None:
        self.traits_json = json.dumps(value or {}, separators=(",", ":"), ensure_ascii=False)

    def __repr__(self):
        return f"<Contact(id={self.id}, email={self.email})>"


class CampaignMembership(Base):
    """A user's live position within one campaign's step sequence."""

    __tablename__ = "campaign_memberships"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_type = Column(String, nullable=False, default="Contact")
    user_id = Column(BigInteger, nullable=False)
    campaign_key = Column(String, nullable=False)
    step_key = Column(String, nullable=False)
    concurrent = Column(Boolean, nullable=False, default=False)
    last_sent_at = Column(DateTime, nullable=True)
    scheduled_for = Column(DateTime, nullable=True)  # NULL = wait relative to last_sent_at
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("uq_campaign_membership_user", "user_type", "user_id", "campaign_key", unique=True),
        Index("idx_campaign_memberships_step", "campaign_key", "step_key"),
        Index("idx_campaign_memberships_last_sent", "last_sent_at"),
        Index(
            "idx_campaign_memberships_scheduled_for",
            "scheduled_for",
            postgresql_where=text("scheduled_for IS NOT NULL"),
            sqlite_where=text("scheduled_for IS NOT NULL"),
        ),
    )

    def __repr__(self):
        return (
            f"<CampaignMembership(id={self.id}, user={self.user_type}:{self.user_id}, "
            f"step={self.campaign_key}/{self.step_key})>"
        )


class CampaignReceipt(Base):
    """Append-only record that a step was evaluated for a user (sent_at NULL = skipped)."""

    __tablename__ = "campaign_receipts"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_type = Column(String, nullable=False, default="Contact")
    user_id = Column(BigInteger, nullable=False)
    campaign_key = Column(String, nullable=False)
    step_key = Column(String, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("uq_campaign_receipt_user_step", "user_type", "user_id", "campaign_key", "step_key", unique=True),
    )

    @property
    def skipped(self) -> bool:
        return self.sent_at is None
