"""
Abstract storage interface for the CRM sync service.

Defines the persistence contract shared by the sync orchestrator, the token
manager and the enrichment pipeline, so the relational backend can be swapped
(DuckDB locally, a managed Postgres in production) without touching callers.

Tables:
- customers / invoices / bank_transactions: synced Xero entities, unique on
  the Xero identifier, written only through idempotent upserts
- xero_connections: one OAuth connection per user
- sync_cursors: resumable page cursors per (user, entity type)
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from pydantic import BaseModel

from crmsync.models.enums import EntityType
from crmsync.models.records import EnrichmentCandidate, OAuthConnection, SyncCursor


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Implementations must guarantee:
    - Upserts keyed on the external identifier (last write wins)
    - Atomic batch writes (a failed batch leaves no partial rows)
    - Errors surfaced as ``StorageError``, never swallowed
    """

    # =========================================================================
    # Synced entities
    # =========================================================================

    @abstractmethod
    def upsert_records(self, entity_type: EntityType, records: Sequence[BaseModel]) -> int:
        """
        Insert or update a batch of normalized records.

        Conflicts on the entity's Xero identifier update every synced column.
        Derived invoice columns (work_description, service_keywords) are not
        touched by this call.

        Args:
            entity_type: Which table to write
            records: Normalized Customer / Invoice / BankTransaction models

        Returns:
            Number of rows written

        Raises:
            StorageError: If the batch cannot be written
        """
        pass

    @abstractmethod
    def read_records(
        self,
        entity_type: EntityType,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[dict]:
        """Read synced rows ordered by row id."""
        pass

    @abstractmethod
    def count_records(self, entity_type: EntityType) -> int:
        """Count synced rows of one entity type."""
        pass

    @abstractmethod
    def clear_synced_data(self) -> dict[str, int]:
        """
        Delete every synced customer, invoice and bank transaction.

        This is the administrative clear; the sync pipeline itself never
        deletes rows.

        Returns:
            Rows deleted per table
        """
        pass

    # =========================================================================
    # OAuth connections
    # =========================================================================

    @abstractmethod
    def get_connection(self, user_id: str) -> Optional[OAuthConnection]:
        """Return the user's Xero connection, or None if not connected."""
        pass

    @abstractmethod
    def save_connection(self, connection: OAuthConnection) -> None:
        """Create or replace the user's Xero connection."""
        pass

    @abstractmethod
    def delete_connection(self, user_id: str) -> bool:
        """Remove the user's Xero connection. Returns True if one existed."""
        pass

    # =========================================================================
    # Sync cursors
    # =========================================================================

    @abstractmethod
    def read_sync_cursors(self, user_id: str) -> dict[str, SyncCursor]:
        """Return stored cursors keyed by entity type value."""
        pass

    @abstractmethod
    def write_sync_cursor(self, cursor: SyncCursor) -> None:
        """Create or update one cursor."""
        pass

    @abstractmethod
    def clear_sync_cursors(self, user_id: str) -> int:
        """Delete all cursors for a user. Returns rows deleted."""
        pass

    # =========================================================================
    # Enrichment
    # =========================================================================

    @abstractmethod
    def select_enrichment_candidates(
        self,
        after_id: int,
        limit: int,
        invoice_type: Optional[str] = None,
    ) -> list[EnrichmentCandidate]:
        """
        Select invoices that still need enrichment, in row id order.

        An invoice needs enrichment when its work description is missing,
        empty or shorter than 20 characters, or its keyword list is missing
        or empty.

        Args:
            after_id: Only rows with id greater than this are returned
            limit: Maximum rows
            invoice_type: Optional invoice type filter (e.g. "ACCREC")
        """
        pass

    @abstractmethod
    def count_enrichment_candidates(
        self, after_id: int, invoice_type: Optional[str] = None
    ) -> int:
        """Count candidates with id greater than ``after_id``."""
        pass

    @abstractmethod
    def update_work_descriptions(self, descriptions: dict[int, str]) -> int:
        """Overwrite work_description for the given invoice row ids."""
        pass

    @abstractmethod
    def update_service_keywords(self, keywords: dict[int, list[str]]) -> int:
        """Overwrite service_keywords for the given invoice row ids."""
        pass
