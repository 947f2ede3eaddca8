"""
Database manager for the inbox pipeline

Persists the message cache, cache metadata, the append-only history ledger
and the index of open short ids.
"""
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ShortIdCollisionError
from .models import HistoryEntry, Message

logger = logging.getLogger(__name__)

Base = declarative_base()

PENDING_EMAIL_RESPONSE = "pendingEmailResponse"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Stored timestamps are UTC; naive bounds are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class CachedMessageDB(Base):
    """SQLAlchemy model for cached_messages table"""
    __tablename__ = "cached_messages"

    id = Column(String(255), primary_key=True)
    thread_id = Column(String(255), index=True)
    internal_date = Column(BigInteger, nullable=False, default=0, index=True)
    from_address = Column(Text, default="")
    to_address = Column(Text, default="")
    subject = Column(Text, default="")
    text = Column(Text, default="")
    html = Column(Text, default="")
    labels = Column(JSON, default=list)
    snippet = Column(Text, default="")
    message_id_header = Column(String(500))

    replied = Column(Boolean, nullable=False, default=False)
    category = Column(String(100), nullable=False, default="other")
    associated_event_id = Column(String(100))
    associated_event_name = Column(String(500))
    has_notified = Column(Boolean, nullable=False, default=False)
    processed_for_suggestions = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CacheMetadataDB(Base):
    """SQLAlchemy model for cache_metadata table"""
    __tablename__ = "cache_metadata"

    key = Column(String(100), primary_key=True)
    value = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class HistoryEntryDB(Base):
    """SQLAlchemy model for history_entries table (append-only)"""
    __tablename__ = "history_entries"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String(64), unique=True, nullable=False)
    type = Column(String(100), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    short_id = Column(String(16), index=True)
    status = Column(String(20))
    data = Column(JSON, default=dict)


class OpenShortIdDB(Base):
    """SQLAlchemy model for open_short_ids table: short id -> open ledger entry"""
    __tablename__ = "open_short_ids"

    short_id = Column(String(16), primary_key=True)
    entry_id = Column(String(64), unique=True, nullable=False)
    claimed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================================
# Database Manager
# ============================================================================

class DatabaseManager:
    """Manage database operations for the cache and the ledger"""

    def __init__(self, database_url: str):
        """
        Initialize database manager.

        Args:
            database_url: SQLAlchemy connection string (PostgreSQL or SQLite)
        """
        if database_url.startswith("sqlite"):
            engine_kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # Every session must see the same in-memory database
                engine_kwargs["poolclass"] = StaticPool
            else:
                db_path = database_url.split("sqlite:///", 1)[-1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        else:
            engine_kwargs = {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True}

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        logger.info(f"Database engine created: {database_url.split('@')[1] if '@' in database_url else database_url}")

    def get_session(self) -> Session:
        """Get a new database session"""
        return self.SessionLocal()

    def init_tables(self):
        """Create tables that do not exist yet"""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables initialized")

    def close(self):
        """Close database engine"""
        self.engine.dispose()
        logger.info("Database engine disposed")

    # ========================================================================
    # Message Cache Operations
    # ========================================================================

    def load_messages(self) -> List[Message]:
        """Load the cached messages, newest first"""
        with self.get_session() as session:
            rows = session.query(CachedMessageDB)\
                .order_by(CachedMessageDB.internal_date.desc())\
                .all()
            return [_row_to_message(row) for row in rows]

    def save_messages(self, messages: List[Message]) -> None:
        """Insert or update a batch of cached messages"""
        with self.get_session() as session:
            for message in messages:
                session.merge(CachedMessageDB(**message.model_dump()))
            session.commit()
        logger.debug(f"Persisted {len(messages)} cached messages")

    # ========================================================================
    # Cache Metadata Operations
    # ========================================================================

    def get_metadata(self, key: str) -> Optional[str]:
        with self.get_session() as session:
            row = session.get(CacheMetadataDB, key)
            return row.value if row else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.get_session() as session:
            session.merge(CacheMetadataDB(key=key, value=value))
            session.commit()

    def get_timestamp(self, key: str) -> Optional[datetime]:
        """Read a timestamp stored with set_timestamp"""
        value = self.get_metadata(key)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning(f"Ignoring malformed timestamp for {key}: {value}")
            return None

    def set_timestamp(self, key: str, value: datetime) -> None:
        self.set_metadata(key, value.isoformat())

    # ========================================================================
    # History Ledger Operations
    # ========================================================================

    def add_history_entry(
        self,
        entry_type: str,
        data: Optional[Dict[str, Any]] = None,
        short_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> HistoryEntry:
        """
        Append an entry to the history ledger.

        Args:
            entry_type: Entry type (e.g., 'sendSMS', 'sendEmail_failed')
            data: Entry-specific fields
            short_id: Short id for pending action entries
            status: Status for pending action entries

        Returns:
            The stored entry
        """
        with self.get_session() as session:
            row = HistoryEntryDB(
                entry_id=uuid.uuid4().hex,
                type=entry_type,
                timestamp=utcnow(),
                short_id=short_id,
                status=status,
                data=data or {},
            )
            session.add(row)
            session.commit()
            return _row_to_entry(row)

    def get_history_entries(
        self,
        entry_type: Optional[str] = None,
        limit: int = 100,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[HistoryEntry]:
        """
        Get the most recent history entries in chronological order.

        Args:
            entry_type: Only entries of this type
            limit: Maximum number of entries
            since: Only entries at or after this time
            until: Only entries at or before this time
        """
        with self.get_session() as session:
            query = session.query(HistoryEntryDB)
            if entry_type:
                query = query.filter_by(type=entry_type)
            if since is not None:
                query = query.filter(HistoryEntryDB.timestamp >= _as_utc(since))
            if until is not None:
                query = query.filter(HistoryEntryDB.timestamp <= _as_utc(until))
            rows = query.order_by(HistoryEntryDB.id.desc()).limit(limit).all()
            return [_row_to_entry(row) for row in reversed(rows)]

    def set_entry_status(self, entry_id: str, status: str) -> bool:
        with self.get_session() as session:
            updated = session.query(HistoryEntryDB)\
                .filter_by(entry_id=entry_id)\
                .update({HistoryEntryDB.status: status})
            session.commit()
            return updated == 1

    # ========================================================================
    # Open Short Id Operations
    # ========================================================================

    def insert_pending_entry(self, short_id: str, data: Dict[str, Any], status: str) -> HistoryEntryDB:
        """
        Append a pending action entry and bind its short id.

        Raises:
            ShortIdCollisionError: If the short id is bound to another open entry
        """
        with self.get_session() as session:
            if session.get(OpenShortIdDB, short_id) is not None:
                raise ShortIdCollisionError(f"Short id {short_id} is already in use")

            row = HistoryEntryDB(
                entry_id=uuid.uuid4().hex,
                type=PENDING_EMAIL_RESPONSE,
                timestamp=utcnow(),
                short_id=short_id,
                status=status,
                data=data,
            )
            session.add(row)
            session.add(OpenShortIdDB(short_id=short_id, entry_id=row.entry_id))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ShortIdCollisionError(f"Short id {short_id} is already in use") from e
            return row

    def short_id_in_use(self, short_id: str) -> bool:
        with self.get_session() as session:
            return session.get(OpenShortIdDB, short_id) is not None

    def get_open_pending_row(self, short_id: str) -> Optional[HistoryEntryDB]:
        """Get the open, unclaimed pending entry bound to a short id"""
        with self.get_session() as session:
            return session.query(HistoryEntryDB)\
                .join(OpenShortIdDB, OpenShortIdDB.entry_id == HistoryEntryDB.entry_id)\
                .filter(OpenShortIdDB.short_id == short_id, OpenShortIdDB.claimed.is_(False))\
                .first()

    def list_open_pending_rows(self) -> List[HistoryEntryDB]:
        with self.get_session() as session:
            return session.query(HistoryEntryDB)\
                .join(OpenShortIdDB, OpenShortIdDB.entry_id == HistoryEntryDB.entry_id)\
                .filter(OpenShortIdDB.claimed.is_(False))\
                .order_by(HistoryEntryDB.id.desc())\
                .all()

    def claim_short_id(self, short_id: str) -> bool:
        """Compare-and-swap the short id from open to claimed"""
        with self.get_session() as session:
            updated = session.query(OpenShortIdDB)\
                .filter(OpenShortIdDB.short_id == short_id, OpenShortIdDB.claimed.is_(False))\
                .update({OpenShortIdDB.claimed: True}, synchronize_session=False)
            session.commit()
            return updated == 1

    def release_short_id(self, short_id: str) -> bool:
        """Return a claimed short id to the open state"""
        with self.get_session() as session:
            updated = session.query(OpenShortIdDB)\
                .filter(OpenShortIdDB.short_id == short_id, OpenShortIdDB.claimed.is_(True))\
                .update({OpenShortIdDB.claimed: False}, synchronize_session=False)
            session.commit()
            return updated == 1

    def remove_short_id(self, short_id: str) -> bool:
        """Unbind a short id once its entry is closed"""
        with self.get_session() as session:
            deleted = session.query(OpenShortIdDB).filter_by(short_id=short_id).delete()
            session.commit()
            return deleted == 1

    def count_open_short_ids(self) -> int:
        with self.get_session() as session:
            return session.query(OpenShortIdDB).filter(OpenShortIdDB.claimed.is_(False)).count()


def _row_to_message(row: CachedMessageDB) -> Message:
    return Message(
        id=row.id,
        thread_id=row.thread_id,
        internal_date=row.internal_date or 0,
        from_address=row.from_address or "",
        to_address=row.to_address or "",
        subject=row.subject or "",
        text=row.text or "",
        html=row.html or "",
        labels=list(row.labels or []),
        snippet=row.snippet or "",
        message_id_header=row.message_id_header,
        replied=bool(row.replied),
        category=row.category or "other",
        associated_event_id=row.associated_event_id,
        associated_event_name=row.associated_event_name,
        has_notified=bool(row.has_notified),
        processed_for_suggestions=bool(row.processed_for_suggestions),
    )


def _row_to_entry(row: HistoryEntryDB) -> HistoryEntry:
    data = dict(row.data or {})
    if row.short_id is not None:
        data.setdefault("shortId", row.short_id)
    if row.status is not None:
        data["status"] = row.status
    return HistoryEntry(entry_id=row.entry_id, type=row.type, timestamp=row.timestamp, data=data)


def get_database_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """
    Get database manager instance.

    Returns:
        DatabaseManager instance with tables created
    """
    url = database_url or os.getenv("DATABASE_URL", "sqlite:///./data/inbox_assistant.db")
    db_manager = DatabaseManager(url)
    db_manager.init_tables()
    return db_manager
