"""
Sync Package
Normalizes provider records and upserts them idempotently into canonical storage.
"""

from app.integrations.sync.normalizers import to_canonical, to_provider_payload
from app.integrations.sync.records import (
    CanonicalRecord,
    ContactRecord,
    InvoiceRecord,
    PaymentRecord,
)
from app.integrations.sync.repository import (
    CanonicalRepository,
    InMemoryCanonicalRepository,
    InMemorySyncStateStore,
    SQLCanonicalRepository,
    SQLSyncStateStore,
    SyncStateStore,
    UpsertResult,
)

__all__ = [
    "CanonicalRecord",
    "InvoiceRecord",
    "PaymentRecord",
    "ContactRecord",
    "to_canonical",
    "to_provider_payload",
    "CanonicalRepository",
    "SQLCanonicalRepository",
    "InMemoryCanonicalRepository",
    "SyncStateStore",
    "SQLSyncStateStore",
    "InMemorySyncStateStore",
    "UpsertResult",
]
