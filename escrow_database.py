"""
Persistence layer for the escrow system.

Two interchangeable stores are provided:

- ``EscrowDatabase``: PostgreSQL via an asyncpg connection pool
- ``InMemoryEscrowStore``: process-local store for development and tests

Both implement conditional writes: ``save(transaction, expected_version)``
only succeeds when the stored row still carries ``expected_version``, so two
requests racing on the same transaction cannot both win. The loser gets a
``ConcurrentUpdateError``.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg

from escrow_models import (
    AIDecision,
    AIStatus,
    DashboardStats,
    EscrowStatus,
    EscrowTransaction,
    ParticipantHistory,
    UserProfile,
)

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


class ConcurrentUpdateError(DatabaseError):
    """Raised when a conditional write loses against a concurrent update."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscrowDatabase:
    """
    Database handler for escrow transactions with PostgreSQL.

    Attributes:
        pool: Connection pool for database operations
        database_url: PostgreSQL connection string
        use_marketplace_tables: Whether the marketplace ``products`` and
            ``users`` tables exist in this database
    """

    def __init__(self, database_url: str, use_marketplace_tables: bool = True):
        """
        Initialize database handler.

        Args:
            database_url: PostgreSQL connection URL
            use_marketplace_tables: Read products/users from the shared schema
        """
        if not database_url:
            raise DatabaseError("Database connection string not provided. Set DATABASE_URL.")

        self.database_url = database_url
        self.use_marketplace_tables = use_marketplace_tables
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """
        Establish database connection pool.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=2,
                max_size=10,
                command_timeout=60
            )
            logger.info("Database connection pool established")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise DatabaseError(f"Database connection failed: {e}")

    async def disconnect(self) -> None:
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.pool

    async def initialize_tables(self) -> None:
        """
        Create the escrow table with indexes and constraints.

        Raises:
            DatabaseError: If table creation fails
        """
        pool = self._require_pool()

        create_escrow_transactions = """
        CREATE TABLE IF NOT EXISTS escrow_transactions (
            id BIGSERIAL PRIMARY KEY,
            buyer_id BIGINT NOT NULL,
            seller_id BIGINT NOT NULL,
            product_id BIGINT NOT NULL,
            amount NUMERIC(15, 2) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (
                status IN ('pending', 'active', 'completed', 'disputed', 'cancelled')
            ),
            ai_status VARCHAR(20) NOT NULL DEFAULT 'processing' CHECK (
                ai_status IN ('processing', 'approved', 'flagged', 'manual_review')
            ),
            risk_score INTEGER NOT NULL DEFAULT 0 CHECK (risk_score BETWEEN 0 AND 100),
            ai_decision JSONB,
            assessment_nonce VARCHAR(64),
            approved_by BIGINT,
            approved_at TIMESTAMPTZ,
            admin_note TEXT,
            completed_by BIGINT,
            completed_at TIMESTAMPTZ,
            completion_note TEXT,
            disputed_by BIGINT,
            disputed_at TIMESTAMPTZ,
            dispute_reason TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT positive_amount CHECK (amount > 0),
            CONSTRAINT buyer_is_not_seller CHECK (buyer_id <> seller_id)
        );
        """

        create_indexes = """
        CREATE INDEX IF NOT EXISTS idx_escrow_transactions_buyer_status
            ON escrow_transactions(buyer_id, status);
        CREATE INDEX IF NOT EXISTS idx_escrow_transactions_seller_status
            ON escrow_transactions(seller_id, status);
        CREATE INDEX IF NOT EXISTS idx_escrow_transactions_status_ai_status
            ON escrow_transactions(status, ai_status);
        CREATE INDEX IF NOT EXISTS idx_escrow_transactions_created_at
            ON escrow_transactions(created_at DESC);
        """

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(create_escrow_transactions)
                    logger.info("Escrow transactions table created/verified")

                    await conn.execute(create_indexes)
                    logger.info("Escrow indexes created/verified")
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to initialize escrow schema: {e}")
            raise DatabaseError(f"Escrow schema initialization failed: {e}")

    async def ping(self) -> bool:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    # ==================== WRITES ====================

    async def insert(
        self,
        buyer_id: int,
        seller_id: int,
        product_id: int,
        amount: Decimal,
        assessment_nonce: Optional[str] = None
    ) -> EscrowTransaction:
        """
        Create a new escrow transaction in pending/processing state.

        Returns:
            The stored transaction with its assigned id

        Raises:
            DatabaseError: If the insert violates a constraint or fails
        """
        pool = self._require_pool()
        now = _utcnow()

        try:
            async with pool.acquire() as conn:
                record = await conn.fetchrow(
                    """
                    INSERT INTO escrow_transactions
                    (buyer_id, seller_id, product_id, amount, status, ai_status,
                     risk_score, assessment_nonce, version, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, 0, $7, 1, $8, $8)
                    RETURNING *
                    """,
                    buyer_id, seller_id, product_id, amount,
                    EscrowStatus.PENDING.value, AIStatus.PROCESSING.value,
                    assessment_nonce, now
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Error creating escrow transaction: {e}")
            raise DatabaseError(f"Failed to create escrow transaction: {e}")

        logger.info(f"Escrow transaction created: {record['id']}")
        return self._to_transaction(record)

    async def save(
        self,
        transaction: EscrowTransaction,
        expected_version: int
    ) -> EscrowTransaction:
        """
        Persist the mutable fields of a transaction if nobody else did first.

        The update is guarded by ``version = expected_version`` and bumps the
        version, so of two concurrent writers based on the same read only
        one row update happens.

        Raises:
            ConcurrentUpdateError: If the stored version moved on
            DatabaseError: If the update fails
        """
        pool = self._require_pool()
        decision = transaction.ai_decision.model_dump_json() if transaction.ai_decision else None

        try:
            async with pool.acquire() as conn:
                record = await conn.fetchrow(
                    """
                    UPDATE escrow_transactions
                    SET status = $1,
                        ai_status = $2,
                        risk_score = $3,
                        ai_decision = $4::jsonb,
                        assessment_nonce = $5,
                        approved_by = $6,
                        approved_at = $7,
                        admin_note = $8,
                        completed_by = $9,
                        completed_at = $10,
                        completion_note = $11,
                        disputed_by = $12,
                        disputed_at = $13,
                        dispute_reason = $14,
                        updated_at = $15,
                        version = version + 1
                    WHERE id = $16 AND version = $17
                    RETURNING *
                    """,
                    transaction.status.value,
                    transaction.ai_status.value,
                    transaction.risk_score,
                    decision,
                    transaction.assessment_nonce,
                    transaction.approved_by,
                    transaction.approved_at,
                    transaction.admin_note,
                    transaction.completed_by,
                    transaction.completed_at,
                    transaction.completion_note,
                    transaction.disputed_by,
                    transaction.disputed_at,
                    transaction.dispute_reason,
                    transaction.updated_at,
                    transaction.id,
                    expected_version
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Error updating escrow transaction {transaction.id}: {e}")
            raise DatabaseError(f"Failed to update escrow transaction: {e}")

        if record is None:
            raise ConcurrentUpdateError(
                f"Transaction {transaction.id} was modified concurrently "
                f"(expected version {expected_version})"
            )

        return self._to_transaction(record)

    # ==================== READS ====================

    async def load(self, transaction_id: int) -> Optional[EscrowTransaction]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                "SELECT * FROM escrow_transactions WHERE id = $1",
                transaction_id
            )
        return self._to_transaction(record) if record else None

    async def query_by_status(self, status: EscrowStatus) -> List[EscrowTransaction]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM escrow_transactions
                WHERE status = $1
                ORDER BY created_at DESC, id DESC
                """,
                status.value
            )
        return [self._to_transaction(r) for r in records]

    async def query_by_participant(self, user_id: int) -> List[EscrowTransaction]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM escrow_transactions
                WHERE buyer_id = $1 OR seller_id = $1
                ORDER BY created_at DESC, id DESC
                """,
                user_id
            )
        return [self._to_transaction(r) for r in records]

    async def query_stalled_assessments(self, cutoff: datetime) -> List[EscrowTransaction]:
        """Pending transactions whose assessment has been processing since before ``cutoff``."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM escrow_transactions
                WHERE status = $1 AND ai_status = $2 AND updated_at < $3
                ORDER BY updated_at ASC
                """,
                EscrowStatus.PENDING.value, AIStatus.PROCESSING.value, cutoff
            )
        return [self._to_transaction(r) for r in records]

    async def count_by_status(self) -> Dict[str, int]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                "SELECT status, COUNT(*) AS total FROM escrow_transactions GROUP BY status"
            )
        return {r['status']: r['total'] for r in records}

    async def dashboard_summary(self, high_risk_threshold: int) -> DashboardStats:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                    COUNT(*) FILTER (WHERE status = 'active') AS active,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                    COUNT(*) FILTER (
                        WHERE status = 'completed' AND completed_at::date = CURRENT_DATE
                    ) AS completed_today,
                    COUNT(*) FILTER (WHERE status = 'disputed') AS disputed,
                    COUNT(*) FILTER (WHERE status = 'cancelled') AS cancelled,
                    COUNT(*) FILTER (WHERE ai_decision IS NOT NULL) AS ai_processed,
                    COUNT(*) FILTER (WHERE ai_status = 'flagged') AS flagged,
                    COUNT(*) FILTER (
                        WHERE ai_decision IS NOT NULL AND risk_score >= $1
                    ) AS high_risk,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'completed'), 0) AS total_volume,
                    COALESCE(AVG(EXTRACT(EPOCH FROM (completed_at - created_at)) / 60)
                        FILTER (WHERE status = 'completed' AND completed_at IS NOT NULL), 0)
                        AS average_minutes
                FROM escrow_transactions
                """,
                high_risk_threshold
            )

        return DashboardStats(
            total=row['total'],
            pending=row['pending'],
            active=row['active'],
            completed=row['completed'],
            completed_today=row['completed_today'],
            disputed=row['disputed'],
            cancelled=row['cancelled'],
            ai_processed=row['ai_processed'],
            flagged=row['flagged'],
            high_risk=row['high_risk'],
            total_volume=Decimal(row['total_volume']),
            average_processing_minutes=round(float(row['average_minutes'])),
        )

    async def participant_history(self, user_id: int) -> ParticipantHistory:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (WHERE buyer_id = $1 AND status = 'completed') AS completed_as_buyer,
                    COUNT(*) FILTER (WHERE seller_id = $1 AND status = 'completed') AS completed_as_seller,
                    COUNT(*) FILTER (WHERE buyer_id = $1 AND status = 'disputed') AS disputed_as_buyer,
                    COUNT(*) FILTER (WHERE seller_id = $1 AND status = 'disputed') AS disputed_as_seller
                FROM escrow_transactions
                WHERE buyer_id = $1 OR seller_id = $1
                """,
                user_id
            )
        return ParticipantHistory(**dict(row))

    async def product_exists(self, product_id: int) -> bool:
        if not self.use_marketplace_tables:
            return True
        pool = self._require_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM products WHERE id = $1)",
                product_id
            )

    async def user_exists(self, user_id: int) -> bool:
        if not self.use_marketplace_tables:
            return True
        pool = self._require_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM users WHERE id = $1)",
                user_id
            )

    async def get_user_profile(self, user_id: int) -> Optional[UserProfile]:
        if not self.use_marketplace_tables:
            return None
        pool = self._require_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT id, is_verified, created_at, wallet_balance
                FROM users WHERE id = $1
                """,
                user_id
            )
        if not record:
            return None
        return UserProfile(
            user_id=record['id'],
            is_verified=bool(record['is_verified']),
            created_at=record['created_at'],
            wallet_balance=Decimal(record['wallet_balance'] or 0),
        )

    @staticmethod
    def _to_transaction(record: Any) -> EscrowTransaction:
        data = dict(record)
        decision = data.get('ai_decision')
        if isinstance(decision, str):
            data['ai_decision'] = AIDecision.model_validate(json.loads(decision))
        return EscrowTransaction.model_validate(data)


class InMemoryEscrowStore:
    """
    Process-local escrow store.

    Used when no DATABASE_URL is configured and in tests. Honours the same
    conditional-write contract as ``EscrowDatabase``; the version check and
    the write happen under one ``asyncio.Lock``.

    Args:
        products: Known product ids. None accepts any product id.
        users: Known user ids. None accepts any user id.
    """

    def __init__(self, products: Optional[set] = None, users: Optional[set] = None):
        self._records: Dict[int, EscrowTransaction] = {}
        self._profiles: Dict[int, UserProfile] = {}
        self._products = products
        self._users = users
        self._next_id = 1
        self._lock = asyncio.Lock()

    def add_product(self, product_id: int) -> None:
        if self._products is None:
            self._products = set()
        self._products.add(product_id)

    def add_user(self, user_id: int) -> None:
        if self._users is None:
            self._users = set()
        self._users.add(user_id)

    def add_user_profile(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile
        if self._users is not None:
            self._users.add(profile.user_id)

    async def ping(self) -> bool:
        return True

    async def disconnect(self) -> None:
        logger.info(f"In-memory escrow store released ({len(self._records)} transactions)")

    async def insert(
        self,
        buyer_id: int,
        seller_id: int,
        product_id: int,
        amount: Decimal,
        assessment_nonce: Optional[str] = None
    ) -> EscrowTransaction:
        if buyer_id == seller_id:
            raise DatabaseError("buyer_is_not_seller constraint violated")
        if amount <= 0:
            raise DatabaseError("positive_amount constraint violated")

        async with self._lock:
            now = _utcnow()
            transaction = EscrowTransaction(
                id=self._next_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                product_id=product_id,
                amount=amount,
                assessment_nonce=assessment_nonce,
                created_at=now,
                updated_at=now,
            )
            self._records[transaction.id] = transaction
            self._next_id += 1

        logger.info(f"Escrow transaction created: {transaction.id}")
        return transaction

    async def save(
        self,
        transaction: EscrowTransaction,
        expected_version: int
    ) -> EscrowTransaction:
        async with self._lock:
            current = self._records.get(transaction.id)
            if current is None or current.version != expected_version:
                raise ConcurrentUpdateError(
                    f"Transaction {transaction.id} was modified concurrently "
                    f"(expected version {expected_version})"
                )
            stored = transaction.model_copy(update={'version': expected_version + 1})
            self._records[transaction.id] = stored
        return stored

    async def load(self, transaction_id: int) -> Optional[EscrowTransaction]:
        return self._records.get(transaction_id)

    def _newest_first(self, records: List[EscrowTransaction]) -> List[EscrowTransaction]:
        return sorted(records, key=lambda t: (t.created_at, t.id), reverse=True)

    async def query_by_status(self, status: EscrowStatus) -> List[EscrowTransaction]:
        return self._newest_first([t for t in self._records.values() if t.status == status])

    async def query_by_participant(self, user_id: int) -> List[EscrowTransaction]:
        return self._newest_first(
            [t for t in self._records.values() if user_id in (t.buyer_id, t.seller_id)]
        )

    async def query_stalled_assessments(self, cutoff: datetime) -> List[EscrowTransaction]:
        stalled = [
            t for t in self._records.values()
            if t.status == EscrowStatus.PENDING
            and t.ai_status == AIStatus.PROCESSING
            and t.updated_at < cutoff
        ]
        return sorted(stalled, key=lambda t: t.updated_at)

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for transaction in self._records.values():
            counts[transaction.status.value] = counts.get(transaction.status.value, 0) + 1
        return counts

    async def dashboard_summary(self, high_risk_threshold: int) -> DashboardStats:
        records = list(self._records.values())
        counts = await self.count_by_status()
        completed = [t for t in records if t.status == EscrowStatus.COMPLETED]
        timed = [t for t in completed if t.completed_at is not None]
        today = datetime.now(timezone.utc).date()

        average_minutes = 0
        if timed:
            total_seconds = sum((t.completed_at - t.created_at).total_seconds() for t in timed)
            average_minutes = round(total_seconds / 60 / len(timed))

        return DashboardStats(
            total=len(records),
            pending=counts.get(EscrowStatus.PENDING.value, 0),
            active=counts.get(EscrowStatus.ACTIVE.value, 0),
            completed=counts.get(EscrowStatus.COMPLETED.value, 0),
            completed_today=sum(1 for t in timed if t.completed_at.date() == today),
            disputed=counts.get(EscrowStatus.DISPUTED.value, 0),
            cancelled=counts.get(EscrowStatus.CANCELLED.value, 0),
            ai_processed=sum(1 for t in records if t.ai_decision is not None),
            flagged=sum(1 for t in records if t.ai_status == AIStatus.FLAGGED),
            high_risk=sum(
                1 for t in records
                if t.ai_decision is not None and t.risk_score >= high_risk_threshold
            ),
            total_volume=sum((t.amount for t in completed), Decimal('0')),
            average_processing_minutes=average_minutes,
        )

    async def participant_history(self, user_id: int) -> ParticipantHistory:
        history = ParticipantHistory()
        for t in self._records.values():
            if t.status == EscrowStatus.COMPLETED:
                history.completed_as_buyer += t.buyer_id == user_id
                history.completed_as_seller += t.seller_id == user_id
            elif t.status == EscrowStatus.DISPUTED:
                history.disputed_as_buyer += t.buyer_id == user_id
                history.disputed_as_seller += t.seller_id == user_id
        return history

    async def product_exists(self, product_id: int) -> bool:
        return self._products is None or product_id in self._products

    async def user_exists(self, user_id: int) -> bool:
        return self._users is None or user_id in self._users

    async def get_user_profile(self, user_id: int) -> Optional[UserProfile]:
        return self._profiles.get(user_id)


async def create_escrow_store(config):
    """
    Create the configured escrow store.

    Returns a connected ``EscrowDatabase`` with its schema initialized when
    DATABASE_URL is set, otherwise an ``InMemoryEscrowStore``.
    """
    if config.has_database_config:
        db = EscrowDatabase(config.database_url, config.use_marketplace_tables)
        await db.connect()
        await db.initialize_tables()
        return db

    logger.warning("DATABASE_URL not set, escrow transactions are kept in memory only")
    return InMemoryEscrowStore()
