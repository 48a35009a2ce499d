from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Index,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from pathlib import Path
import logging

from config import settings
from utils.clock import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== TRADE HISTORY ====================


class TradeHistoryRow(Base):
    """One swap made by a user against a futarchy pool.

    Amounts are signed wei deltas of the user's balance and can exceed
    64 bits, so they are stored as decimal strings.
    """

    __tablename__ = "trade_history"

    # Event ids are only unique within a transaction
    evt_tx_hash = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    user_address = Column(String, nullable=False)
    proposal_id = Column(String, nullable=True)
    pool_id = Column(String, nullable=True)
    token0 = Column(String, nullable=False)
    token1 = Column(String, nullable=False)
    amount0 = Column(String, nullable=False, default="0")
    amount1 = Column(String, nullable=False, default="0")
    evt_block_time = Column(DateTime, nullable=False)
    evt_block_number = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_th_user_time", "user_address", "evt_block_time"),
        Index("idx_th_proposal", "proposal_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "evt_tx_hash": self.evt_tx_hash,
            "user_address": self.user_address,
            "proposal_id": self.proposal_id,
            "pool_id": self.pool_id,
            "token0": self.token0,
            "token1": self.token1,
            "amount0": self.amount0,
            "amount1": self.amount1,
            "evt_block_time": self.evt_block_time,
            "evt_block_number": self.evt_block_number,
        }


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


# Apply pragmas on each new SQLite connection
event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def _ensure_sqlite_directory(database_url: str) -> None:
    prefix = "sqlite+aiosqlite:///"
    if not database_url.startswith(prefix):
        return
    path_part = database_url[len(prefix) :]
    if not path_part or path_part == ":memory:":
        return
    Path(path_part).parent.mkdir(parents=True, exist_ok=True)


async def init_database():
    """Create tables that do not exist yet."""
    _ensure_sqlite_directory(str(async_engine.url))
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")
