"""
Models Package
SQLAlchemy ORM models for the application.
"""

from app.models.audit_entry import AuditEntryRecord
from app.models.canonical import CanonicalContact, CanonicalInvoice, CanonicalPayment
from app.models.credential import ProviderCredential
from app.models.sync_state import SyncState

__all__ = [
    "AuditEntryRecord",
    "CanonicalContact",
    "CanonicalInvoice",
    "CanonicalPayment",
    "ProviderCredential",
    "SyncState",
]
