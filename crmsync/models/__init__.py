"""
Pydantic v2 data models for the CRM sync service.

Model Organization:
    - enums: Enumeration types for entity kinds, statuses and strategies
    - records: Persisted customer / invoice / bank transaction rows, OAuth
      connections and sync cursors
    - sync: Chunked sync request/response contracts
    - connection: Access grants and connection status
    - enrichment: Enrichment batch request/response contracts
"""

from .connection import AccessGrant, ConnectionStatus
from .enrichment import EnrichmentRequest, EnrichmentResult, FilterStats, TokenUsage
from .enums import (
    BankTransactionType,
    ContactStatus,
    EnrichmentStrategy,
    EntityType,
    InvoiceStatus,
    InvoiceType,
)
from .records import (
    Address,
    BankTransaction,
    Customer,
    EnrichmentCandidate,
    Invoice,
    OAuthConnection,
    PhoneNumber,
    SyncCursor,
)
from .sync import (
    DateParsingStats,
    EntityProgress,
    SyncChunkRequest,
    SyncChunkResponse,
    SyncSummary,
)

__all__ = [
    "EntityType",
    "ContactStatus",
    "InvoiceType",
    "InvoiceStatus",
    "BankTransactionType",
    "EnrichmentStrategy",
    "PhoneNumber",
    "Address",
    "Customer",
    "Invoice",
    "BankTransaction",
    "OAuthConnection",
    "SyncCursor",
    "EnrichmentCandidate",
    "AccessGrant",
    "ConnectionStatus",
    "DateParsingStats",
    "EntityProgress",
    "SyncChunkRequest",
    "SyncChunkResponse",
    "SyncSummary",
    "TokenUsage",
    "FilterStats",
    "EnrichmentRequest",
    "EnrichmentResult",
]
