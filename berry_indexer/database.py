"""
Database Schema and Connection Handling

SQLAlchemy models for the derived Nouns entities, connection management with
automatic reconnection, and the upsert primitives the reconciler writes through.
Store methods are coroutines; each one runs its session on a worker thread.
"""

from typing import Optional, List, Dict, Any, Iterable, Sequence, Tuple, Callable, TypeVar
from datetime import datetime
from contextlib import contextmanager, nullcontext
import asyncio
import json
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, BigInteger, String, Boolean,
    Numeric, Text, JSON, Index, UniqueConstraint, Enum as SQLEnum,
    select, update as sa_update, insert as sa_insert, and_, func, text
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import OperationalError, DisconnectionError
from sqlalchemy.types import TypeDecorator
import redis
from redis.exceptions import ConnectionError as RedisConnectionError

from .types import ProposalStatus, RewardUpdateType, ProposalSnapshot, DatabaseError
from .config import DatabaseConfig, RedisConfig

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")


class Wei(TypeDecorator):
    """
    Exact unsigned 256-bit amounts.

    NUMERIC(78, 0) on Postgres. SQLite has no exact type that wide, so amounts
    are stored there as decimal text. Values always load as ``int``.
    """

    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == "postgresql":
            return value
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


WEI = Wei()


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class NounModel(Base):
    """Nouns table"""
    __tablename__ = 'nouns'

    id = Column(Integer, primary_key=True, autoincrement=False)

    # Seed
    background = Column(Integer, nullable=False, default=0)
    body = Column(Integer, nullable=False, default=0)
    accessory = Column(Integer, nullable=False, default=0)
    head = Column(Integer, nullable=False, default=0)
    glasses = Column(Integer, nullable=False, default=0)

    # Derived artwork and metrics
    svg = Column(Text, nullable=False, default="")
    area = Column(Integer, nullable=False, default=0)
    color_count = Column(Integer, nullable=False, default=0)
    brightness = Column(Integer, nullable=False, default=128)

    owner = Column(String(42), nullable=True, index=True)
    owner_ordinal = Column(BigInteger, nullable=True)  # Ordinal of the transfer that set owner
    burned = Column(Boolean, nullable=False, default=False)
    burned_at = Column(BigInteger, nullable=True)

    # Mint
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)

    # Settlement
    winning_bid = Column(WEI, nullable=True)
    winner_address = Column(String(42), nullable=True, index=True)
    winner_ens = Column(String(255), nullable=True)
    settled_by_address = Column(String(42), nullable=True)
    settled_by_ens = Column(String(255), nullable=True)
    settled_at = Column(BigInteger, nullable=True)
    settled_tx_hash = Column(String(66), nullable=True)


class AuctionModel(Base):
    """Auctions table"""
    __tablename__ = 'auctions'

    noun_id = Column(Integer, primary_key=True, autoincrement=False)
    start_time = Column(BigInteger, nullable=True)
    end_time = Column(BigInteger, nullable=True)
    extended = Column(Boolean, nullable=False, default=False)
    settled = Column(Boolean, nullable=False, default=False, index=True)
    winner = Column(String(42), nullable=True)
    amount = Column(WEI, nullable=True)
    settler_address = Column(String(42), nullable=True)
    client_id = Column(Integer, nullable=True)
    block_number = Column(BigInteger, nullable=True)
    block_timestamp = Column(BigInteger, nullable=True)


class AuctionBidModel(Base):
    """Auction bids table, one row per (transaction, noun)"""
    __tablename__ = 'auction_bids'

    id = Column(String(90), primary_key=True)  # "{tx_hash}-{noun_id}"
    noun_id = Column(Integer, nullable=False, index=True)
    tx_hash = Column(String(66), nullable=False)
    bidder = Column(String(42), nullable=True, index=True)
    amount = Column(WEI, nullable=True)
    extended = Column(Boolean, nullable=True)
    client_id = Column(Integer, nullable=True)
    block_number = Column(BigInteger, nullable=True)
    block_timestamp = Column(BigInteger, nullable=True)


class TransferModel(Base):
    """Token transfer history"""
    __tablename__ = 'transfers'

    id = Column(String(90), primary_key=True)  # "{tx_hash}-{log_index}"
    from_address = Column(String(42), nullable=False)
    to_address = Column(String(42), nullable=False, index=True)
    token_id = Column(Integer, nullable=False, index=True)
    tx_hash = Column(String(66), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class DelegationModel(Base):
    """Delegation change history"""
    __tablename__ = 'delegations'

    id = Column(String(90), primary_key=True)
    delegator = Column(String(42), nullable=False, index=True)
    from_delegate = Column(String(42), nullable=False)
    to_delegate = Column(String(42), nullable=False, index=True)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class VoterModel(Base):
    """Voter aggregates"""
    __tablename__ = 'voters'

    address = Column(String(42), primary_key=True)
    delegated_votes = Column(Integer, nullable=False, default=0)
    delegation_ordinal = Column(BigInteger, nullable=True)  # Ordinal of last applied DelegateVotesChanged
    total_votes = Column(Integer, nullable=False, default=0)
    first_seen_at = Column(BigInteger, nullable=True)
    last_vote_at = Column(BigInteger, nullable=True)
    ens_name = Column(String(255), nullable=True)


class ProposalModel(Base):
    """Governance proposals table"""
    __tablename__ = 'proposals'

    id = Column(Integer, primary_key=True, autoincrement=False)
    proposer = Column(String(42), nullable=True, index=True)
    status = Column(SQLEnum(ProposalStatus), nullable=False, default=ProposalStatus.PENDING, index=True)

    # Tallies
    for_votes = Column(Integer, nullable=False, default=0)
    against_votes = Column(Integer, nullable=False, default=0)
    abstain_votes = Column(Integer, nullable=False, default=0)
    quorum_votes = Column(Integer, nullable=True)
    proposal_threshold = Column(Integer, nullable=True)

    # Content
    title = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    targets = Column(JSON, nullable=True)
    call_values = Column(JSON, nullable=True)
    signatures = Column(JSON, nullable=True)
    calldatas = Column(JSON, nullable=True)
    signers = Column(JSON, nullable=True)
    client_id = Column(Integer, nullable=True, index=True)

    # Timing
    start_block = Column(BigInteger, nullable=True)
    end_block = Column(BigInteger, nullable=True)
    start_timestamp = Column(BigInteger, nullable=True)
    end_timestamp = Column(BigInteger, nullable=True)
    update_period_end_block = Column(BigInteger, nullable=True)
    objection_period_end_block = Column(BigInteger, nullable=True)
    created_block = Column(BigInteger, nullable=True)
    created_timestamp = Column(BigInteger, nullable=True)
    created_tx_hash = Column(String(66), nullable=True)
    eta = Column(BigInteger, nullable=True)
    queued_at = Column(BigInteger, nullable=True)
    executed_at = Column(BigInteger, nullable=True)
    cancelled_at = Column(BigInteger, nullable=True)
    vetoed_at = Column(BigInteger, nullable=True)
    content_ordinal = Column(BigInteger, nullable=True)  # Ordinal of the event that set the content

    __table_args__ = (
        Index('idx_proposal_status_created', 'status', 'created_timestamp'),
    )


class ProposalVersionModel(Base):
    """Audit trail of proposal content edits"""
    __tablename__ = 'proposal_versions'

    id = Column(String(90), primary_key=True)
    proposal_id = Column(Integer, nullable=False, index=True)
    edit_kind = Column(String(40), nullable=False)
    title = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    targets = Column(JSON, nullable=True)
    call_values = Column(JSON, nullable=True)
    signatures = Column(JSON, nullable=True)
    calldatas = Column(JSON, nullable=True)
    update_message = Column(Text, nullable=True)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class VoteModel(Base):
    """Votes table, one row per (transaction, log index) and per (proposal, voter)"""
    __tablename__ = 'votes'

    id = Column(String(90), primary_key=True)  # "{tx_hash}-{log_index}" of the VoteCast
    proposal_id = Column(Integer, nullable=False, index=True)
    voter = Column(String(42), nullable=False, index=True)
    support = Column(Integer, nullable=True)   # NULL until the VoteCast itself is applied
    votes = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    client_id = Column(Integer, nullable=True)
    tx_hash = Column(String(66), nullable=True)
    block_number = Column(BigInteger, nullable=True)
    block_timestamp = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint('proposal_id', 'voter', name='uq_vote_proposal_voter'),
        Index('idx_vote_proposal_client', 'proposal_id', 'client_id'),
    )


class ClientModel(Base):
    """Client incentive records"""
    __tablename__ = 'clients'

    client_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    approved = Column(Boolean, nullable=False, default=False)
    metadata_ordinal = Column(BigInteger, nullable=True)
    approval_ordinal = Column(BigInteger, nullable=True)
    total_rewarded = Column(WEI, nullable=False, default=0)
    total_withdrawn = Column(WEI, nullable=False, default=0)
    block_number = Column(BigInteger, nullable=True)
    block_timestamp = Column(BigInteger, nullable=True)


class ClientRewardEventModel(Base):
    """Client reward ledger"""
    __tablename__ = 'client_reward_events'

    id = Column(String(90), primary_key=True)
    client_id = Column(Integer, nullable=False, index=True)
    amount = Column(WEI, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class ClientWithdrawalModel(Base):
    """Client withdrawal ledger"""
    __tablename__ = 'client_withdrawals'

    id = Column(String(90), primary_key=True)
    client_id = Column(Integer, nullable=False, index=True)
    amount = Column(WEI, nullable=False)
    to_address = Column(String(42), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class RewardUpdateModel(Base):
    """Reward distribution ledger"""
    __tablename__ = 'reward_updates'

    id = Column(String(90), primary_key=True)
    update_type = Column(SQLEnum(RewardUpdateType), nullable=False, index=True)
    first_id = Column(Integer, nullable=False)   # first proposal or auction id covered
    last_id = Column(Integer, nullable=False)
    params = Column(JSON, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class ConfigChangeModel(Base):
    """Contract configuration change audit log"""
    __tablename__ = 'config_changes'

    id = Column(String(90), primary_key=True)
    contract = Column(String(40), nullable=False, index=True)
    event_name = Column(String(80), nullable=False)
    params = Column(JSON, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)


class IdentityModel(Base):
    """Persisted identity resolutions"""
    __tablename__ = 'ens_names'

    address = Column(String(42), primary_key=True)
    name = Column(String(255), nullable=True)
    avatar = Column(Text, nullable=True)
    resolved_at = Column(BigInteger, nullable=False)


# ============================================================================
# Database Connection Manager
# ============================================================================

class DatabaseManager:
    """Database connection manager with automatic reconnection"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.SessionLocal = None
        # SQLite has a single writer and in-memory databases share one connection
        self._session_lock: Optional[threading.Lock] = None
        self._initialize_engine()

    def _initialize_engine(self):
        """Initialize SQLAlchemy engine with connection pooling"""
        connection_string = self.config.connection_string

        if connection_string.startswith("sqlite"):
            self._session_lock = threading.Lock()
            # In-memory databases live on a single shared connection
            if connection_string in ("sqlite://", "sqlite:///:memory:"):
                self.engine = create_engine(
                    connection_string,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                    echo=False
                )
            else:
                self.engine = create_engine(connection_string, echo=False)
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine
        )

        logger.info(f"Database engine initialized ({self.engine.dialect.name})")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_tables(self):
        """Create all tables if they don't exist"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created/verified")
        except Exception as e:
            logger.error(f"Failed to create tables: {e}")
            raise DatabaseError(f"Table creation failed: {e}")

    @contextmanager
    def get_session(self) -> Session:
        """Get database session with automatic cleanup"""
        with self._session_lock or nullcontext():
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except (OperationalError, DisconnectionError) as e:
                session.rollback()
                logger.error(f"Database connection error: {e}")
                if self.dialect != "sqlite":
                    self._initialize_engine()
                raise DatabaseError(f"Database connection lost: {e}")
            except Exception as e:
                session.rollback()
                logger.error(f"Database error: {e}")
                raise DatabaseError(f"Database operation failed: {e}")
            finally:
                session.close()

    def health_check(self) -> bool:
        """Check database connection health"""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# ============================================================================
# Entity Store
# ============================================================================

def _key_clause(table, key: Dict[str, Any]):
    if not key:
        raise DatabaseError("Refusing to address rows with an empty key")
    return and_(*[table.c[name] == value for name, value in key.items()])


# A write bound to its statement, executed later inside a session; returns the rowcount
Op = Callable[[Session], int]


class EntityStore:
    """
    Upsert primitives over the derived entity tables.

    Each coroutine is one transaction run on a worker thread, so store I/O of
    concurrent event transactions overlaps instead of stalling the event loop.
    Concurrent or repeated writers converge on the natural or composite key
    without application locks.

    - insert: plain insert, conflicts raise DatabaseError
    - insert_or_ignore: insert-if-absent, returns True when a row was created
    - insert_or_merge: upsert that overwrites only ``merge_fields`` on conflict
    - update: patch by key, returns True when a row matched
    - increment: ``col = col + delta`` by key
    - apply_once: a claiming write and its follow-up writes in one transaction
    - find: key lookup returning a plain dict

    ``insert_or_ignore_op``, ``update_op`` and ``increment_op`` build the
    unexecuted writes that ``apply_once`` takes.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def _run(self, work: Callable[[Session], T]) -> T:
        def in_session() -> T:
            with self.db.get_session() as session:
                return work(session)

        return await asyncio.to_thread(in_session)

    @staticmethod
    def _statement_op(stmt) -> Op:
        return lambda session: session.execute(stmt).rowcount

    def _upsert_insert(self, model):
        dialect = self.db.dialect
        if dialect == "postgresql":
            return pg_insert(model.__table__)
        if dialect == "sqlite":
            return sqlite_insert(model.__table__)
        raise DatabaseError(f"Upserts are not supported on dialect '{dialect}'")

    # ------------------------------------------------------------------
    # Write builders
    # ------------------------------------------------------------------

    def insert_or_ignore_op(self, model, values: Dict[str, Any]) -> Op:
        stmt = self._upsert_insert(model).values(**values).on_conflict_do_nothing()
        return self._statement_op(stmt)

    def update_op(
        self,
        model,
        key: Dict[str, Any],
        patch: Dict[str, Any],
        only_if_null: Optional[str] = None,
        only_if_in: Optional[Tuple[str, Iterable[Any]]] = None,
        only_if_less: Optional[Tuple[str, Any]] = None
    ) -> Op:
        table = model.__table__
        clause = _key_clause(table, key)
        if only_if_null is not None:
            clause = and_(clause, table.c[only_if_null].is_(None))
        if only_if_in is not None:
            column, allowed = only_if_in
            clause = and_(clause, table.c[column].in_(list(allowed)))
        if only_if_less is not None:
            column, value = only_if_less
            clause = and_(clause, table.c[column].is_(None) | (table.c[column] < value))
        return self._statement_op(sa_update(table).where(clause).values(**patch))

    def increment_op(self, model, key: Dict[str, Any], deltas: Dict[str, Any]) -> Op:
        table = model.__table__
        clause = _key_clause(table, key)
        if self.db.dialect == "sqlite" and any(isinstance(table.c[name].type, Wei) for name in deltas):
            return self._read_modify_write(table, clause, deltas)
        stmt = (
            sa_update(table)
            .where(clause)
            .values(**{name: table.c[name] + delta for name, delta in deltas.items()})
        )
        return self._statement_op(stmt)

    @staticmethod
    def _read_modify_write(table, clause, deltas: Dict[str, Any]) -> Op:
        # SQLite would add text-stored amounts as REAL; sum them in Python under the session lock
        columns = list(deltas)

        def op(session: Session) -> int:
            row = session.execute(select(*[table.c[name] for name in columns]).where(clause)).first()
            if row is None:
                return 0
            values = {name: (current or 0) + deltas[name] for name, current in zip(columns, row)}
            return session.execute(sa_update(table).where(clause).values(**values)).rowcount

        return op

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, model, values: Dict[str, Any]) -> None:
        await self._run(self._statement_op(sa_insert(model.__table__).values(**values)))

    async def insert_or_ignore(self, model, values: Dict[str, Any]) -> bool:
        return await self._run(self.insert_or_ignore_op(model, values)) == 1

    async def insert_or_merge(
        self,
        model,
        values: Dict[str, Any],
        merge_fields: Sequence[str],
        conflict_fields: Optional[Sequence[str]] = None,
        newer_than: Optional[str] = None
    ) -> bool:
        """
        Insert ``values`` or merge ``merge_fields`` into the conflicting row.

        Args:
            model: Declarative model class
            values: Full row values for the insert path
            merge_fields: Columns overwritten from ``values`` on conflict
            conflict_fields: Unique columns that define a conflict (primary key by default)
            newer_than: Ordinal column; the merge only applies when the incoming
                value is not older than the stored one

        Returns:
            True if a row was inserted or merged
        """
        table = model.__table__
        if conflict_fields is None:
            conflict_fields = [c.name for c in table.primary_key.columns]

        stmt = self._upsert_insert(model).values(**values)
        if not merge_fields:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_fields))
        else:
            set_ = {name: stmt.excluded[name] for name in merge_fields}
            where = None
            if newer_than is not None:
                existing = table.c[newer_than]
                where = existing.is_(None) | (existing <= stmt.excluded[newer_than])
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_fields),
                set_=set_,
                where=where
            )

        return await self._run(self._statement_op(stmt)) == 1

    async def update(
        self,
        model,
        key: Dict[str, Any],
        patch: Dict[str, Any],
        only_if_null: Optional[str] = None,
        only_if_in: Optional[Tuple[str, Iterable[Any]]] = None,
        only_if_less: Optional[Tuple[str, Any]] = None
    ) -> bool:
        """
        Patch the row addressed by ``key``.

        Guards, all evaluated atomically in the UPDATE:
            only_if_null: column that must still be NULL
            only_if_in: (column, allowed values) the stored value must be one of
            only_if_less: (column, value) the stored value must be NULL or below value

        Returns:
            True if a row was patched
        """
        op = self.update_op(
            model, key, patch,
            only_if_null=only_if_null, only_if_in=only_if_in, only_if_less=only_if_less
        )
        return await self._run(op) > 0

    async def increment(self, model, key: Dict[str, Any], deltas: Dict[str, Any]) -> bool:
        return await self._run(self.increment_op(model, key, deltas)) > 0

    async def apply_once(self, claim: Op, then: Sequence[Op] = (), fallback: Optional[Op] = None) -> bool:
        """
        Run ``claim`` and, only if it touched a row, every write in ``then``.

        All writes share one transaction: if any of them fails nothing is kept,
        and a redelivered event can claim again.

        Args:
            claim: Write that marks the event as applied, usually an insert-if-absent
            then: Writes that must happen exactly once per claimed event
            fallback: Tried when ``claim`` touched nothing, e.g. a guarded fill of
                a row another event created

        Returns:
            True if the claim (or its fallback) applied
        """
        def work(session: Session) -> bool:
            claimed = claim(session) > 0
            if not claimed and fallback is not None:
                claimed = fallback(session) > 0
            if claimed:
                for op in then:
                    op(session)
            return claimed

        return await self._run(work)

    async def find(self, model, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        table = model.__table__
        stmt = select(table).where(_key_clause(table, key))

        def work(session: Session) -> Optional[Dict[str, Any]]:
            row = session.execute(stmt).mappings().first()
            return dict(row) if row is not None else None

        return await self._run(work)

    # ------------------------------------------------------------------
    # Read queries for reward-cycle evaluation
    # ------------------------------------------------------------------

    async def proposals_from(self, first_id: int) -> List[ProposalSnapshot]:
        """Proposals with id >= first_id, newest first"""
        table = ProposalModel.__table__
        stmt = select(table).where(table.c.id >= first_id).order_by(table.c.id.desc())

        def work(session: Session) -> List[ProposalSnapshot]:
            return [
                ProposalSnapshot(
                    id=row['id'],
                    status=row['status'],
                    for_votes=row['for_votes'],
                    against_votes=row['against_votes'],
                    abstain_votes=row['abstain_votes'],
                    quorum_votes=row['quorum_votes'],
                    client_id=row['client_id'],
                    created_timestamp=row['created_timestamp'],
                    end_timestamp=row['end_timestamp'],
                    title=row['title'],
                )
                for row in session.execute(stmt).mappings().all()
            ]

        return await self._run(work)

    async def client_vote_weights(self, proposal_ids: Iterable[int]) -> Dict[int, Dict[int, int]]:
        """Summed vote weight per client per proposal, client-attributed applied votes only"""
        ids = list(proposal_ids)
        if not ids:
            return {}
        table = VoteModel.__table__
        stmt = (
            select(table.c.proposal_id, table.c.client_id, func.sum(table.c.votes))
            .where(table.c.proposal_id.in_(ids))
            .where(table.c.client_id.isnot(None))
            .where(table.c.votes.isnot(None))
            .group_by(table.c.proposal_id, table.c.client_id)
        )

        def work(session: Session) -> Dict[int, Dict[int, int]]:
            weights: Dict[int, Dict[int, int]] = {}
            for proposal_id, client_id, total in session.execute(stmt):
                weights.setdefault(proposal_id, {})[client_id] = int(total or 0)
            return weights

        return await self._run(work)

    async def client_names(self) -> Dict[int, str]:
        table = ClientModel.__table__
        stmt = select(table.c.client_id, table.c.name)
        return await self._run(lambda session: {
            client_id: name or f"Client {client_id}"
            for client_id, name in session.execute(stmt)
        })

    async def open_proposal_ids(self, terminal: Iterable[ProposalStatus]) -> List[int]:
        """Ids of proposals whose stored status is not terminal"""
        table = ProposalModel.__table__
        stmt = select(table.c.id).where(table.c.status.notin_(list(terminal))).order_by(table.c.id)
        return await self._run(lambda session: [row[0] for row in session.execute(stmt)])

    async def count(self, model, key: Optional[Dict[str, Any]] = None) -> int:
        table = model.__table__
        stmt = select(func.count()).select_from(table)
        if key:
            stmt = stmt.where(_key_clause(table, key))
        return await self._run(lambda session: int(session.execute(stmt).scalar() or 0))


# ============================================================================
# Redis Connection Manager
# ============================================================================

class RedisManager:
    """Redis connection manager with fallback to in-memory cache"""

    def __init__(self, config: RedisConfig):
        self.config = config
        self.client: Optional[redis.Redis] = None
        self._in_memory_cache: Dict[str, Any] = {}
        self._use_fallback = False
        self._connect()

    def _connect(self):
        """Connect to Redis"""
        try:
            self.client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                password=self.config.password,
                db=self.config.db,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30
            )
            self.client.ping()
            self._use_fallback = False
            logger.info("Redis connection established")
        except RedisConnectionError as e:
            logger.warning(f"Redis connection failed, using in-memory fallback: {e}")
            self._use_fallback = True

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set key-value with optional TTL"""
        ttl = ttl or self.config.ttl_seconds

        if self._use_fallback:
            self._in_memory_cache[key] = (value, datetime.utcnow())
            return True

        try:
            self.client.setex(key, ttl, value)
            return True
        except RedisConnectionError:
            logger.warning("Redis set failed, switching to fallback")
            self._use_fallback = True
            self._in_memory_cache[key] = (value, datetime.utcnow())
            return True

    def get(self, key: str) -> Optional[str]:
        """Get value by key"""
        if self._use_fallback:
            if key in self._in_memory_cache:
                value, timestamp = self._in_memory_cache[key]
                age = (datetime.utcnow() - timestamp).total_seconds()
                if age < self.config.ttl_seconds:
                    return value
                del self._in_memory_cache[key]
            return None

        try:
            return self.client.get(key)
        except RedisConnectionError:
            logger.warning("Redis get failed, switching to fallback")
            self._use_fallback = True
            return self.get(key)

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            self.delete(key)
            return None

    def set_json(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        return self.set(key, json.dumps(value), ttl)

    def delete(self, key: str) -> bool:
        """Delete key"""
        if self._use_fallback:
            self._in_memory_cache.pop(key, None)
            return True

        try:
            self.client.delete(key)
            return True
        except RedisConnectionError:
            logger.warning("Redis delete failed, switching to fallback")
            self._use_fallback = True
            self._in_memory_cache.pop(key, None)
            return True

    def health_check(self) -> bool:
        """Check Redis connection health"""
        if self._use_fallback:
            return False

        try:
            self.client.ping()
            return True
        except RedisConnectionError:
            logger.warning("Redis health check failed")
            self._use_fallback = True
            return False


# ============================================================================
# Initialization
# ============================================================================

def init_database(config: DatabaseConfig) -> DatabaseManager:
    """Create the database manager and make sure the schema exists"""
    db_manager = DatabaseManager(config)
    db_manager.create_tables()
    return db_manager


def init_redis(config: RedisConfig) -> RedisManager:
    return RedisManager(config)
