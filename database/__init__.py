"""Database package - models and connection management."""
from database.db import Database, db
from database.models import (
    Base,
    Contact,
    CampaignMembership,
    CampaignReceipt,
)

__all__ = [
    "Database",
    "db",
    "Base",
    "Contact",
    "CampaignMembership",
    "CampaignReceipt",
]
