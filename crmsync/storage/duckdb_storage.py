"""
DuckDB storage implementation for the CRM sync service.

Provides a local relational backend with the same contract a managed Postgres
deployment would offer: unique Xero identifiers, bulk idempotent upserts via
``INSERT ... ON CONFLICT DO UPDATE``, JSON columns for nested upstream data,
and a storage-assigned row id used as the enrichment cursor.

Key features:
- Thread-local connections
- Automatic schema creation
- Batch upserts inside a single transaction (rollback on error)
- Structured logging on every failure path
"""

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional, Sequence

import duckdb
import structlog
from pydantic import BaseModel

from crmsync.models.enums import EntityType
from crmsync.models.records import EnrichmentCandidate, OAuthConnection, SyncCursor

from .base import StorageBackend

logger = structlog.get_logger(__name__)


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


@dataclass(frozen=True)
class TableSpec:
    """Column layout of one synced entity table."""

    table: str
    key: str
    columns: tuple[str, ...]
    json_columns: frozenset[str]
    date_columns: frozenset[str]
    # Columns owned by the enrichment pipeline; never overwritten by sync.
    derived_columns: frozenset[str] = frozenset()

    @property
    def synced_columns(self) -> tuple[str, ...]:
        return tuple(c for c in self.columns if c not in self.derived_columns)


TABLE_SPECS: dict[EntityType, TableSpec] = {
    EntityType.CUSTOMERS: TableSpec(
        table="customers",
        key="xero_contact_id",
        columns=(
            "xero_contact_id",
            "name",
            "email_address",
            "phone_numbers",
            "addresses",
            "contact_status",
            "is_supplier",
            "is_customer",
            "contact_groups",
            "sales_tracking_categories",
            "purchases_tracking_categories",
            "contact_number",
            "account_number",
            "tax_number",
            "website",
            "updated_at",
        ),
        json_columns=frozenset(
            {
                "phone_numbers",
                "addresses",
                "contact_groups",
                "sales_tracking_categories",
                "purchases_tracking_categories",
            }
        ),
        date_columns=frozenset(),
    ),
    EntityType.INVOICES: TableSpec(
        table="invoices",
        key="xero_invoice_id",
        columns=(
            "xero_invoice_id",
            "xero_contact_id",
            "invoice_number",
            "invoice_type",
            "invoice_status",
            "line_amount_types",
            "invoice_date",
            "due_date",
            "fully_paid_on_date",
            "sub_total",
            "total_tax",
            "total",
            "total_discount",
            "amount_due",
            "amount_paid",
            "amount_credited",
            "currency_code",
            "reference",
            "line_items",
            "work_description",
            "service_keywords",
            "updated_at",
        ),
        json_columns=frozenset({"line_items", "service_keywords"}),
        date_columns=frozenset({"invoice_date", "due_date", "fully_paid_on_date"}),
        derived_columns=frozenset({"work_description", "service_keywords"}),
    ),
    EntityType.BANK_TRANSACTIONS: TableSpec(
        table="bank_transactions",
        key="xero_bank_transaction_id",
        columns=(
            "xero_bank_transaction_id",
            "xero_contact_id",
            "xero_bank_account_id",
            "bank_account_name",
            "bank_account_code",
            "transaction_type",
            "status",
            "transaction_date",
            "total_amount",
            "sub_total",
            "total_tax",
            "is_reconciled",
            "particulars",
            "code",
            "reference",
            "currency_code",
            "line_items",
            "updated_at",
        ),
        json_columns=frozenset({"line_items"}),
        date_columns=frozenset({"transaction_date"}),
    ),
}

_NEEDS_ENRICHMENT = """
    (work_description IS NULL
     OR length(work_description) < 20
     OR service_keywords IS NULL
     OR json_array_length(service_keywords) = 0)
"""


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/crm.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except duckdb.Error as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        yield self._local.connection

    @contextmanager
    def _transaction(self):
        """Run a block in one transaction, rolling back on any error."""
        with self._get_connection() as conn:
            conn.begin()
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def _initialize_schema(self):
        """
        Create tables and sequences. Idempotent.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    for seq in ("customers_id_seq", "invoices_id_seq", "bank_transactions_id_seq"):
                        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {seq} START 1")

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS customers (
                            id BIGINT NOT NULL DEFAULT nextval('customers_id_seq'),
                            xero_contact_id VARCHAR PRIMARY KEY,
                            name VARCHAR NOT NULL,
                            email_address VARCHAR,
                            phone_numbers JSON,
                            addresses JSON,
                            contact_status VARCHAR,
                            is_supplier BOOLEAN NOT NULL DEFAULT FALSE,
                            is_customer BOOLEAN NOT NULL DEFAULT TRUE,
                            contact_groups JSON,
                            sales_tracking_categories JSON,
                            purchases_tracking_categories JSON,
                            contact_number VARCHAR,
                            account_number VARCHAR,
                            tax_number VARCHAR,
                            website VARCHAR,
                            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                            updated_at TIMESTAMP
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS invoices (
                            id BIGINT NOT NULL DEFAULT nextval('invoices_id_seq'),
                            xero_invoice_id VARCHAR PRIMARY KEY,
                            xero_contact_id VARCHAR,
                            invoice_number VARCHAR,
                            invoice_type VARCHAR,
                            invoice_status VARCHAR,
                            line_amount_types VARCHAR,
                            invoice_date DATE,
                            due_date DATE,
                            fully_paid_on_date DATE,
                            sub_total DECIMAL(18, 2),
                            total_tax DECIMAL(18, 2),
                            total DECIMAL(18, 2),
                            total_discount DECIMAL(18, 2),
                            amount_due DECIMAL(18, 2),
                            amount_paid DECIMAL(18, 2),
                            amount_credited DECIMAL(18, 2),
                            currency_code VARCHAR,
                            reference VARCHAR,
                            line_items JSON,
                            work_description VARCHAR,
                            service_keywords JSON,
                            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                            updated_at TIMESTAMP
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS bank_transactions (
                            id BIGINT NOT NULL DEFAULT nextval('bank_transactions_id_seq'),
                            xero_bank_transaction_id VARCHAR PRIMARY KEY,
                            xero_contact_id VARCHAR,
                            xero_bank_account_id VARCHAR,
                            bank_account_name VARCHAR,
                            bank_account_code VARCHAR,
                            transaction_type VARCHAR NOT NULL,
                            status VARCHAR,
                            transaction_date DATE,
                            total_amount DECIMAL(18, 2),
                            sub_total DECIMAL(18, 2),
                            total_tax DECIMAL(18, 2),
                            is_reconciled BOOLEAN NOT NULL DEFAULT FALSE,
                            particulars VARCHAR,
                            code VARCHAR,
                            reference VARCHAR,
                            currency_code VARCHAR,
                            line_items JSON,
                            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                            updated_at TIMESTAMP
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS xero_connections (
                            user_id VARCHAR PRIMARY KEY,
                            access_token VARCHAR NOT NULL,
                            refresh_token VARCHAR NOT NULL,
                            tenant_id VARCHAR NOT NULL,
                            tenant_name VARCHAR,
                            expires_at TIMESTAMP NOT NULL,
                            refresh_expires_at TIMESTAMP NOT NULL,
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS sync_cursors (
                            user_id VARCHAR NOT NULL,
                            entity_type VARCHAR NOT NULL,
                            next_page INTEGER NOT NULL,
                            has_more BOOLEAN NOT NULL,
                            total_synced BIGINT NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (user_id, entity_type)
                        )
                    """)

                self._initialized = True
                logger.info("duckdb_schema_initialized", db_path=str(self.db_path))

            except duckdb.Error as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """Delete all rows in all tables (test isolation only)."""
        with self._transaction() as conn:
            for t in (
                "customers",
                "invoices",
                "bank_transactions",
                "xero_connections",
                "sync_cursors",
            ):
                conn.execute(f"DELETE FROM {t}")

    # =========================================================================
    # Synced entities
    # =========================================================================

    @staticmethod
    def _to_row(table_spec: TableSpec, record: BaseModel) -> list[Any]:
        data = record.model_dump(mode="json")
        row: list[Any] = []
        for column in table_spec.synced_columns:
            value = data.get(column)
            if column in table_spec.json_columns:
                value = json.dumps(value if value is not None else [])
            elif column == "updated_at":
                value = getattr(record, column)
            row.append(value)
        return row

    def upsert_records(self, entity_type: EntityType, records: Sequence[BaseModel]) -> int:
        """Bulk upsert keyed on the Xero identifier."""
        if not records:
            return 0

        table_spec = TABLE_SPECS[EntityType(entity_type)]

        # ON CONFLICT cannot touch the same key twice in one batch; last occurrence wins.
        unique: dict[str, BaseModel] = {}
        for record in records:
            unique[getattr(record, table_spec.key)] = record

        columns = table_spec.synced_columns
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != table_spec.key)
        sql = (
            f"INSERT INTO {table_spec.table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({table_spec.key}) DO UPDATE SET {updates}"
        )
        rows = [self._to_row(table_spec, r) for r in unique.values()]

        try:
            with self._transaction() as conn:
                conn.executemany(sql, rows)
        except duckdb.Error as e:
            logger.error(
                "upsert_failed",
                table=table_spec.table,
                batch_size=len(rows),
                error=str(e),
            )
            raise StorageError(f"Failed to upsert {table_spec.table}: {e}") from e

        logger.debug("records_upserted", table=table_spec.table, count=len(rows))
        return len(rows)

    def read_records(
        self,
        entity_type: EntityType,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[dict]:
        """Read synced rows with JSON columns decoded and dates as ISO strings."""
        table_spec = TABLE_SPECS[EntityType(entity_type)]
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"SELECT id, {', '.join(table_spec.columns)} FROM {table_spec.table} "
                    f"ORDER BY id LIMIT ? OFFSET ?",
                    [limit, offset],
                )
                names = [d[0] for d in cursor.description]
                rows = cursor.fetchall()
        except duckdb.Error as e:
            logger.error("read_records_failed", table=table_spec.table, error=str(e))
            raise StorageError(f"Failed to read {table_spec.table}: {e}") from e

        results = []
        for row in rows:
            item = dict(zip(names, row))
            for column, value in item.items():
                if column in table_spec.json_columns and isinstance(value, str):
                    item[column] = json.loads(value)
                elif isinstance(value, date) and not isinstance(value, datetime):
                    item[column] = value.isoformat()
                elif isinstance(value, Decimal):
                    item[column] = float(value)
            results.append(item)
        return results

    def count_records(self, entity_type: EntityType) -> int:
        table_spec = TABLE_SPECS[EntityType(entity_type)]
        try:
            with self._get_connection() as conn:
                return conn.execute(f"SELECT COUNT(*) FROM {table_spec.table}").fetchone()[0]
        except duckdb.Error as e:
            raise StorageError(f"Failed to count {table_spec.table}: {e}") from e

    def clear_synced_data(self) -> dict[str, int]:
        deleted: dict[str, int] = {}
        try:
            with self._transaction() as conn:
                for table_spec in TABLE_SPECS.values():
                    deleted[table_spec.table] = conn.execute(
                        f"SELECT COUNT(*) FROM {table_spec.table}"
                    ).fetchone()[0]
                    conn.execute(f"DELETE FROM {table_spec.table}")
        except duckdb.Error as e:
            logger.error("clear_synced_data_failed", error=str(e))
            raise StorageError(f"Failed to clear synced data: {e}") from e

        logger.warning("synced_data_cleared", **deleted)
        return deleted

    # =========================================================================
    # OAuth connections
    # =========================================================================

    def get_connection(self, user_id: str) -> Optional[OAuthConnection]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT user_id, access_token, refresh_token, tenant_id, tenant_name,
                           expires_at, refresh_expires_at, created_at, updated_at
                    FROM xero_connections
                    WHERE user_id = ?
                    """,
                    [user_id],
                ).fetchone()
        except duckdb.Error as e:
            logger.error("get_connection_failed", user_id=user_id, error=str(e))
            raise StorageError(f"Failed to read connection: {e}") from e

        if row is None:
            return None

        return OAuthConnection(
            user_id=row[0],
            access_token=row[1],
            refresh_token=row[2],
            tenant_id=row[3],
            tenant_name=row[4],
            expires_at=row[5],
            refresh_expires_at=row[6],
            created_at=row[7],
            updated_at=row[8],
        )

    def save_connection(self, connection: OAuthConnection) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO xero_connections (
                        user_id, access_token, refresh_token, tenant_id, tenant_name,
                        expires_at, refresh_expires_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id) DO UPDATE SET
                        access_token = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        tenant_id = EXCLUDED.tenant_id,
                        tenant_name = EXCLUDED.tenant_name,
                        expires_at = EXCLUDED.expires_at,
                        refresh_expires_at = EXCLUDED.refresh_expires_at,
                        updated_at = EXCLUDED.updated_at
                    """,
                    [
                        connection.user_id,
                        connection.access_token,
                        connection.refresh_token,
                        connection.tenant_id,
                        connection.tenant_name,
                        connection.expires_at,
                        connection.refresh_expires_at,
                        connection.created_at,
                        connection.updated_at,
                    ],
                )
        except duckdb.Error as e:
            logger.error("save_connection_failed", user_id=connection.user_id, error=str(e))
            raise StorageError(f"Failed to save connection: {e}") from e

        logger.debug("connection_saved", user_id=connection.user_id)

    def delete_connection(self, user_id: str) -> bool:
        try:
            with self._transaction() as conn:
                existing = conn.execute(
                    "SELECT COUNT(*) FROM xero_connections WHERE user_id = ?", [user_id]
                ).fetchone()[0]
                conn.execute("DELETE FROM xero_connections WHERE user_id = ?", [user_id])
        except duckdb.Error as e:
            logger.error("delete_connection_failed", user_id=user_id, error=str(e))
            raise StorageError(f"Failed to delete connection: {e}") from e
        return existing > 0

    # =========================================================================
    # Sync cursors
    # =========================================================================

    def read_sync_cursors(self, user_id: str) -> dict[str, SyncCursor]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT user_id, entity_type, next_page, has_more, total_synced, updated_at
                    FROM sync_cursors
                    WHERE user_id = ?
                    """,
                    [user_id],
                ).fetchall()
        except duckdb.Error as e:
            logger.error("read_sync_cursors_failed", user_id=user_id, error=str(e))
            raise StorageError(f"Failed to read sync cursors: {e}") from e

        return {
            row[1]: SyncCursor(
                user_id=row[0],
                entity_type=row[1],
                next_page=row[2],
                has_more=row[3],
                total_synced=row[4],
                updated_at=row[5],
            )
            for row in rows
        }

    def write_sync_cursor(self, cursor: SyncCursor) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_cursors (
                        user_id, entity_type, next_page, has_more, total_synced, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, entity_type) DO UPDATE SET
                        next_page = EXCLUDED.next_page,
                        has_more = EXCLUDED.has_more,
                        total_synced = EXCLUDED.total_synced,
                        updated_at = EXCLUDED.updated_at
                    """,
                    [
                        cursor.user_id,
                        cursor.entity_type,
                        cursor.next_page,
                        cursor.has_more,
                        cursor.total_synced,
                        cursor.updated_at,
                    ],
                )
        except duckdb.Error as e:
            logger.error(
                "write_sync_cursor_failed",
                user_id=cursor.user_id,
                entity_type=cursor.entity_type,
                error=str(e),
            )
            raise StorageError(f"Failed to write sync cursor: {e}") from e

    def clear_sync_cursors(self, user_id: str) -> int:
        try:
            with self._transaction() as conn:
                count = conn.execute(
                    "SELECT COUNT(*) FROM sync_cursors WHERE user_id = ?", [user_id]
                ).fetchone()[0]
                conn.execute("DELETE FROM sync_cursors WHERE user_id = ?", [user_id])
        except duckdb.Error as e:
            raise StorageError(f"Failed to clear sync cursors: {e}") from e
        return count

    # =========================================================================
    # Enrichment
    # =========================================================================

    def select_enrichment_candidates(
        self,
        after_id: int,
        limit: int,
        invoice_type: Optional[str] = None,
    ) -> list[EnrichmentCandidate]:
        query = f"""
            SELECT id, invoice_number, line_items, work_description, service_keywords
            FROM invoices
            WHERE id > ? AND {_NEEDS_ENRICHMENT}
        """
        params: list[Any] = [after_id]
        if invoice_type:
            query += " AND invoice_type = ?"
            params.append(invoice_type)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)

        try:
            with self._get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
        except duckdb.Error as e:
            logger.error("select_enrichment_candidates_failed", error=str(e))
            raise StorageError(f"Failed to select enrichment candidates: {e}") from e

        return [
            EnrichmentCandidate(
                id=row[0],
                invoice_number=row[1],
                line_items=json.loads(row[2]) if row[2] else [],
                work_description=row[3],
                service_keywords=json.loads(row[4]) if row[4] else None,
            )
            for row in rows
        ]

    def count_enrichment_candidates(
        self, after_id: int, invoice_type: Optional[str] = None
    ) -> int:
        query = f"SELECT COUNT(*) FROM invoices WHERE id > ? AND {_NEEDS_ENRICHMENT}"
        params: list[Any] = [after_id]
        if invoice_type:
            query += " AND invoice_type = ?"
            params.append(invoice_type)
        try:
            with self._get_connection() as conn:
                return conn.execute(query, params).fetchone()[0]
        except duckdb.Error as e:
            raise StorageError(f"Failed to count enrichment candidates: {e}") from e

    def update_work_descriptions(self, descriptions: dict[int, str]) -> int:
        if not descriptions:
            return 0
        try:
            with self._transaction() as conn:
                conn.executemany(
                    "UPDATE invoices SET work_description = ? WHERE id = ?",
                    [[text, invoice_id] for invoice_id, text in descriptions.items()],
                )
        except duckdb.Error as e:
            logger.error("update_work_descriptions_failed", count=len(descriptions), error=str(e))
            raise StorageError(f"Failed to update work descriptions: {e}") from e
        return len(descriptions)

    def update_service_keywords(self, keywords: dict[int, list[str]]) -> int:
        if not keywords:
            return 0
        try:
            with self._transaction() as conn:
                conn.executemany(
                    "UPDATE invoices SET service_keywords = ? WHERE id = ?",
                    [[json.dumps(kws), invoice_id] for invoice_id, kws in keywords.items()],
                )
        except duckdb.Error as e:
            logger.error("update_service_keywords_failed", count=len(keywords), error=str(e))
            raise StorageError(f"Failed to update service keywords: {e}") from e
        return len(keywords)
