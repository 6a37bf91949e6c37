"""Ledger Store - async SQLite persistence for settlement.

This service:
- Holds games, markets, trades, payouts, receipts, settlements, the treasury
  ledger and the settlement queue
- Signals uniqueness violations as DuplicateRecordError, distinct from every
  other failure, so callers can treat them as "already done"
- Locks queue items with a single conditional UPDATE ... RETURNING
- Retries "database is locked" briefly before surfacing StoreBusyError

Several worker processes may open their own LedgerStore on the same file;
SQLite serialises writers, so each statement is atomic across them.
"""

import asyncio
import json
import sqlite3
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite
import structlog

from tote.core.config import ConfigManager
from tote.core.errors import (
    DataIntegrityError,
    DuplicateRecordError,
    StoreBusyError,
    StoreError,
    ToteError,
    retry_transient,
)
from tote.domain.models import (
    Direction,
    Game,
    GameStatus,
    LedgerEntry,
    LedgerEntryType,
    Market,
    MarketSettlement,
    MarketStatus,
    Outcome,
    Payout,
    PayoutStatus,
    QueueStatus,
    ReceiptStatus,
    ReceiptType,
    SettlementQueueItem,
    SettlementReceipt,
    Side,
    Trade,
    TreasuryEntry,
    TreasuryEntryType,
)

log = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

DEFAULT_DB_PATH = "./data/tote.db"

SCHEMA_SQL = """
-- Games (written by the ingestion pipeline)
CREATE TABLE IF NOT EXISTS games (
    id INTEGER PRIMARY KEY,
    league TEXT NOT NULL,
    external_game_id TEXT,
    provider TEXT,
    scheduled_at TEXT,
    status TEXT NOT NULL DEFAULT 'scheduled',
    home_score INTEGER,
    away_score INTEGER,
    winner_side TEXT,
    settled_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Markets
CREATE TABLE IF NOT EXISTS markets (
    id TEXT PRIMARY KEY,
    game_id INTEGER,
    external_game_id TEXT,
    league TEXT,
    title TEXT NOT NULL DEFAULT '',
    is_locked INTEGER NOT NULL DEFAULT 0,
    lock_reason TEXT,
    locked_at TEXT,
    market_status TEXT NOT NULL DEFAULT 'open',
    game_status TEXT,
    final_outcome TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- User ledger; trade_lock rows are the trades
CREATE TABLE IF NOT EXISTS ledger_entries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    market_id TEXT,
    entry_type TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('debit', 'credit')),
    amount TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USDC',
    side TEXT,
    reference_id TEXT,
    meta TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    CHECK (entry_type != 'trade_lock' OR side IN ('HOME', 'AWAY'))
);

-- Payout instructions for the external rail
CREATE TABLE IF NOT EXISTS payouts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    market_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USDC',
    status TEXT NOT NULL DEFAULT 'queued',
    destination_wallet TEXT,
    tx_signature TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT
);

-- One settlement record per market
CREATE TABLE IF NOT EXISTS market_settlements (
    id TEXT PRIMARY KEY,
    market_id TEXT NOT NULL UNIQUE,
    game_id INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    total_volume TEXT NOT NULL,
    total_payouts TEXT NOT NULL,
    payout_count INTEGER NOT NULL DEFAULT 0,
    gross_pool TEXT NOT NULL,
    winning_pool TEXT NOT NULL,
    losing_pool TEXT NOT NULL,
    platform_fee_amount TEXT NOT NULL,
    net_distributed_amount TEXT NOT NULL,
    winners_count INTEGER NOT NULL DEFAULT 0,
    losers_count INTEGER NOT NULL DEFAULT 0,
    fee_rate TEXT NOT NULL,
    settled_by TEXT NOT NULL,
    settled_at TEXT NOT NULL,
    meta TEXT NOT NULL DEFAULT '{}'
);

-- Idempotency receipts
CREATE TABLE IF NOT EXISTS settlement_receipts (
    id TEXT PRIMARY KEY,
    settlement_queue_id TEXT NOT NULL,
    market_id TEXT NOT NULL,
    game_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    receipt_type TEXT NOT NULL CHECK (receipt_type IN ('PAYOUT', 'REFUND', 'FEE')),
    status TEXT NOT NULL DEFAULT 'INITIATED'
        CHECK (status IN ('INITIATED', 'CONFIRMED', 'FAILED')),
    amount TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USDC',
    payout_id TEXT,
    ledger_entry_id TEXT,
    tx_hash TEXT,
    initiated_at TEXT NOT NULL,
    confirmed_at TEXT,
    failed_at TEXT,
    failure_reason TEXT,
    UNIQUE (market_id, user_id, receipt_type)
);

-- Platform treasury
CREATE TABLE IF NOT EXISTS treasury_ledger (
    id TEXT PRIMARY KEY,
    settlement_id TEXT UNIQUE,
    market_id TEXT,
    game_id INTEGER,
    entry_type TEXT NOT NULL
        CHECK (entry_type IN ('SETTLEMENT_FEE', 'DEPOSIT', 'WITHDRAWAL', 'ADJUSTMENT')),
    amount TEXT NOT NULL,
    fee_rate TEXT,
    gross_pool TEXT,
    losing_pool TEXT,
    meta TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

-- Settlement queue, one job per game
CREATE TABLE IF NOT EXISTS settlement_queue (
    id TEXT PRIMARY KEY,
    game_id INTEGER NOT NULL UNIQUE,
    league TEXT,
    external_game_id TEXT,
    provider TEXT,
    status TEXT NOT NULL DEFAULT 'QUEUED'
        CHECK (status IN ('QUEUED', 'PROCESSING', 'DONE', 'FAILED', 'SKIPPED')),
    outcome TEXT,
    reason TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TEXT NOT NULL,
    locked_by TEXT,
    locked_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_markets_game ON markets(game_id);
CREATE INDEX IF NOT EXISTS idx_markets_external ON markets(external_game_id, league);
CREATE INDEX IF NOT EXISTS idx_ledger_market_type ON ledger_entries(market_id, entry_type);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries(user_id);
CREATE INDEX IF NOT EXISTS idx_payouts_market ON payouts(market_id);
CREATE INDEX IF NOT EXISTS idx_settlements_game ON market_settlements(game_id);
CREATE INDEX IF NOT EXISTS idx_receipts_game ON settlement_receipts(game_id);
CREATE INDEX IF NOT EXISTS idx_treasury_created ON treasury_ledger(created_at);
CREATE INDEX IF NOT EXISTS idx_queue_status_next ON settlement_queue(status, next_attempt_at);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""

LOCK_NEXT_SQL = """
UPDATE settlement_queue
SET status = 'PROCESSING', locked_by = ?, locked_at = ?, updated_at = ?
WHERE id = (
    SELECT id FROM settlement_queue
    WHERE status IN ('QUEUED', 'FAILED')
      AND locked_by IS NULL
      AND next_attempt_at <= ?
    ORDER BY next_attempt_at, created_at
    LIMIT 1
)
AND locked_by IS NULL
RETURNING *
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp as sortable ISO-8601 UTC with microseconds."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> str:
    return str(value)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _json(meta: dict[str, Any]) -> str:
    return json.dumps(meta or {}, default=str, sort_keys=True)


def parse_side(value: Any) -> Side:
    """Coerce a trade side, rejecting anything that is not HOME or AWAY."""
    if isinstance(value, Side):
        return value
    if not value:
        raise DataIntegrityError("Trade side is missing")
    try:
        return Side(str(value).strip().upper())
    except ValueError:
        raise DataIntegrityError(f"Malformed trade side: {value!r}") from None


def parse_outcome(value: Any) -> Outcome:
    """Coerce a declared game outcome, rejecting anything outside Outcome."""
    if isinstance(value, Outcome):
        return value
    if not value:
        raise DataIntegrityError("Outcome is missing")
    try:
        return Outcome(str(value).strip().upper())
    except ValueError:
        raise DataIntegrityError(f"Malformed outcome: {value!r}") from None


def parse_amount(value: Any) -> Decimal:
    """Coerce a stake amount, rejecting negative or non-numeric values."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise DataIntegrityError(f"Malformed amount: {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise DataIntegrityError(f"Amount must be a non-negative number, got {value!r}")
    return amount


def _translate_error(error: sqlite3.Error, table: str) -> ToteError:
    """Map a sqlite3 error onto the tote error hierarchy."""
    message = str(error)
    if isinstance(error, sqlite3.IntegrityError):
        if "UNIQUE" in message or "PRIMARY KEY" in message:
            return DuplicateRecordError(table, error)
        return DataIntegrityError(f"Constraint failed on {table}: {message}", error)
    if isinstance(error, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    ):
        return StoreBusyError(f"Store busy while writing {table}", error)
    return StoreError(f"Store error on {table}: {message}", error)


class ConnectionPool:
    """Single serialised connection to the SQLite file.

    aiosqlite connections are not safe to interleave transactions on, so all
    writes go through one lock. WAL mode lets other processes read while a
    writer holds the file.
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        """Connect to the database."""
        async with self._lock:
            if self._connected:
                return

            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self._db_path)
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")

            self._connected = True

    async def close(self) -> None:
        """Close the connection."""
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def acquire(self) -> aiosqlite.Connection:
        """Return the connection.

        Raises:
            RuntimeError: If pool is not connected.
        """
        if not self._connected or not self._connection:
            raise RuntimeError("Connection pool not connected")
        return self._connection

    @property
    def lock(self) -> asyncio.Lock:
        """Get the connection lock for write operations."""
        return self._lock


class LedgerStore:
    """SQLite-backed ledger store for settlement.

    Stores:
    - Games and markets (written by ingestion)
    - Trades and ledger entries
    - Payouts, receipts and market settlements
    - Treasury ledger
    - Settlement queue
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
    ):
        """Initialize the ledger store.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for default settings.
        """
        self._config = config
        self._log = log.bind(component="ledger_store")

        if db_path:
            self._db_path = str(db_path)
        elif config:
            self._db_path = str(config.get("database.path", DEFAULT_DB_PATH))
        else:
            self._db_path = DEFAULT_DB_PATH

        busy_timeout = config.get_int("database.busy_timeout_ms", 5000) if config else 5000
        self._pool = ConnectionPool(self._db_path, busy_timeout_ms=busy_timeout)
        self._start_time: Optional[float] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    async def connect(self) -> None:
        """Connect to database and create the schema."""
        self._start_time = time.time()
        self._log.info("connecting_ledger_store", db_path=self._db_path)

        await self._pool.connect()

        conn = await self._pool.acquire()
        async with self._pool.lock:
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()

        self._log.info("ledger_store_connected")

    async def close(self) -> None:
        """Close database connection."""
        await self._pool.close()
        self._log.info("ledger_store_closed")

    async def __aenter__(self) -> "LedgerStore":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _get_tables(self) -> list[str]:
        rows = await self._fetch("SELECT name FROM sqlite_master WHERE type='table'", (), "sqlite_master")
        return [row["name"] for row in rows]

    # ============ Statement helpers ============

    @retry_transient(log_context={"component": "ledger_store"})
    async def _execute(
        self,
        sql: str,
        params: Iterable[Any],
        table: str,
        returning: bool = False,
    ) -> tuple[int, list[aiosqlite.Row]]:
        """Run one write statement in its own transaction.

        Returns (rowcount, rows); rows are only fetched for RETURNING
        statements and are read before the commit.
        """
        conn = await self._pool.acquire()
        async with self._pool.lock:
            try:
                cursor = await conn.execute(sql, tuple(params))
                rows = list(await cursor.fetchall()) if returning else []
                rowcount = len(rows) if returning else cursor.rowcount
                await cursor.close()
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                raise _translate_error(e, table) from e
        return rowcount, rows

    @retry_transient(log_context={"component": "ledger_store"})
    async def _fetch(self, sql: str, params: Iterable[Any], table: str) -> list[aiosqlite.Row]:
        conn = await self._pool.acquire()
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise _translate_error(e, table) from e

    async def _fetch_one(self, sql: str, params: Iterable[Any], table: str) -> Optional[aiosqlite.Row]:
        rows = await self._fetch(sql, params, table)
        return rows[0] if rows else None

    # ============ Game Operations ============

    async def upsert_game(self, game: Game) -> Game:
        """Insert or update a game; never clears settled_at."""
        now = _ts(_now())
        await self._execute(
            """
            INSERT INTO games
            (id, league, external_game_id, provider, scheduled_at, status,
             home_score, away_score, winner_side, settled_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                league = excluded.league,
                external_game_id = excluded.external_game_id,
                provider = excluded.provider,
                scheduled_at = excluded.scheduled_at,
                status = excluded.status,
                home_score = excluded.home_score,
                away_score = excluded.away_score,
                winner_side = excluded.winner_side,
                settled_at = COALESCE(games.settled_at, excluded.settled_at),
                updated_at = excluded.updated_at
            """,
            (
                game.id,
                game.league,
                game.external_game_id,
                game.provider,
                _ts(game.scheduled_at),
                GameStatus(game.status).value,
                game.home_score,
                game.away_score,
                game.winner_side,
                _ts(game.settled_at),
                now,
                now,
            ),
            "games",
        )
        return game

    async def get_game(self, game_id: int) -> Optional[Game]:
        row = await self._fetch_one("SELECT * FROM games WHERE id = ?", (game_id,), "games")
        if row is None:
            return None
        return self._row_to_game(row)

    async def stamp_game_settled(self, game_id: int, settled_at: Optional[datetime] = None) -> bool:
        """Set settled_at if it is still empty. Returns True if this call stamped it."""
        rowcount, _ = await self._execute(
            "UPDATE games SET settled_at = ?, updated_at = ? WHERE id = ? AND settled_at IS NULL",
            (_ts(settled_at or _now()), _ts(_now()), game_id),
            "games",
        )
        return rowcount > 0

    async def list_unqueued_final_games(self, limit: int = 100) -> list[Game]:
        """FINAL games that are neither settled nor in the settlement queue."""
        rows = await self._fetch(
            """
            SELECT g.* FROM games g
            LEFT JOIN settlement_queue q ON q.game_id = g.id
            WHERE g.status = ? AND g.settled_at IS NULL AND q.id IS NULL
            ORDER BY g.id
            LIMIT ?
            """,
            (GameStatus.FINAL.value, limit),
            "games",
        )
        return [self._row_to_game(row) for row in rows]

    def _row_to_game(self, row: aiosqlite.Row) -> Game:
        return Game(
            id=row["id"],
            league=row["league"],
            status=GameStatus(row["status"]),
            external_game_id=row["external_game_id"],
            provider=row["provider"],
            scheduled_at=_parse_ts(row["scheduled_at"]),
            home_score=row["home_score"],
            away_score=row["away_score"],
            winner_side=row["winner_side"],
            settled_at=_parse_ts(row["settled_at"]),
        )

    # ============ Market Operations ============

    async def upsert_market(self, market: Market) -> Market:
        """Insert a market, or refresh its binding and title.

        Lock and resolution fields are only written on insert; afterwards
        they change through lock_market and resolve_market.
        """
        now = _ts(_now())
        await self._execute(
            """
            INSERT INTO markets
            (id, game_id, external_game_id, league, title, is_locked, lock_reason,
             locked_at, market_status, game_status, final_outcome, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                game_id = excluded.game_id,
                external_game_id = excluded.external_game_id,
                league = excluded.league,
                title = excluded.title,
                game_status = excluded.game_status,
                updated_at = excluded.updated_at
            """,
            (
                market.id,
                market.game_id,
                market.external_game_id,
                market.league,
                market.title,
                1 if market.is_locked else 0,
                market.lock_reason,
                _ts(market.locked_at),
                MarketStatus(market.market_status).value,
                market.game_status,
                market.final_outcome,
                now,
                now,
            ),
            "markets",
        )
        return market

    async def get_market(self, market_id: str) -> Optional[Market]:
        row = await self._fetch_one("SELECT * FROM markets WHERE id = ?", (market_id,), "markets")
        if row is None:
            return None
        return self._row_to_market(row)

    async def get_markets_for_game(self, game: Game) -> list[Market]:
        """Markets bound to a game by id, else by external id + league (legacy rows)."""
        rows = await self._fetch(
            "SELECT * FROM markets WHERE game_id = ? ORDER BY created_at, id",
            (game.id,),
            "markets",
        )
        if not rows and game.external_game_id:
            rows = await self._fetch(
                """
                SELECT * FROM markets
                WHERE external_game_id = ? AND league = ?
                ORDER BY created_at, id
                """,
                (game.external_game_id, game.league),
                "markets",
            )
        return [self._row_to_market(row) for row in rows]

    async def lock_market(
        self,
        market_id: str,
        reason: str,
        locked_at: Optional[datetime] = None,
    ) -> bool:
        """Close trading on a market. Returns True if it was open."""
        rowcount, _ = await self._execute(
            """
            UPDATE markets
            SET is_locked = 1, lock_reason = ?, locked_at = ?, updated_at = ?
            WHERE id = ? AND is_locked = 0
            """,
            (reason, _ts(locked_at or _now()), _ts(_now()), market_id),
            "markets",
        )
        return rowcount > 0

    async def resolve_market(
        self,
        market_id: str,
        status: MarketStatus,
        final_outcome: str,
        game_status: str = "final",
    ) -> None:
        await self._execute(
            """
            UPDATE markets
            SET market_status = ?, final_outcome = ?, game_status = ?, updated_at = ?
            WHERE id = ?
            """,
            (MarketStatus(status).value, final_outcome, game_status, _ts(_now()), market_id),
            "markets",
        )

    def _row_to_market(self, row: aiosqlite.Row) -> Market:
        return Market(
            id=row["id"],
            title=row["title"],
            game_id=row["game_id"],
            external_game_id=row["external_game_id"],
            league=row["league"],
            is_locked=bool(row["is_locked"]),
            lock_reason=row["lock_reason"],
            locked_at=_parse_ts(row["locked_at"]),
            market_status=MarketStatus(row["market_status"]),
            game_status=row["game_status"],
            final_outcome=row["final_outcome"],
        )

    # ============ Trade / Ledger Operations ============

    async def record_trade(self, trade: Trade) -> Trade:
        """Record a trade_lock entry.

        Raises:
            DataIntegrityError: side missing or malformed, amount negative.
        """
        trade.side = parse_side(trade.side)
        trade.amount = parse_amount(trade.amount)
        await self.insert_ledger_entry(
            LedgerEntry(
                id=trade.id,
                user_id=trade.user_id,
                market_id=trade.market_id,
                entry_type=LedgerEntryType.TRADE_LOCK,
                direction=Direction.DEBIT,
                amount=trade.amount,
                currency=trade.currency,
                side=trade.side,
                created_at=trade.created_at,
            )
        )
        self._log.debug(
            "trade_recorded",
            trade_id=trade.id,
            market_id=trade.market_id,
            side=trade.side.value,
        )
        return trade

    async def get_trades_for_market(self, market_id: str) -> list[Trade]:
        rows = await self._fetch(
            """
            SELECT * FROM ledger_entries
            WHERE market_id = ? AND entry_type = 'trade_lock'
            ORDER BY created_at, id
            """,
            (market_id,),
            "ledger_entries",
        )
        return [self._row_to_trade(row) for row in rows]

    def _row_to_trade(self, row: aiosqlite.Row) -> Trade:
        return Trade(
            id=row["id"],
            user_id=row["user_id"],
            market_id=row["market_id"],
            amount=parse_amount(row["amount"]),
            side=parse_side(row["side"]),
            currency=row["currency"],
            created_at=_parse_ts(row["created_at"]) or _now(),
        )

    async def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._execute(
            """
            INSERT INTO ledger_entries
            (id, user_id, market_id, entry_type, direction, amount, currency,
             side, reference_id, meta, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.user_id,
                entry.market_id,
                LedgerEntryType(entry.entry_type).value,
                Direction(entry.direction).value,
                _money(entry.amount),
                entry.currency,
                entry.side.value if entry.side else None,
                entry.reference_id,
                _json(entry.meta),
                _ts(entry.created_at),
            ),
            "ledger_entries",
        )
        return entry

    async def get_ledger_entries(
        self,
        user_id: Optional[str] = None,
        market_id: Optional[str] = None,
        entry_type: Optional[LedgerEntryType] = None,
    ) -> list[LedgerEntry]:
        query = "SELECT * FROM ledger_entries WHERE 1=1"
        params: list[Any] = []

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if market_id:
            query += " AND market_id = ?"
            params.append(market_id)

        if entry_type:
            query += " AND entry_type = ?"
            params.append(LedgerEntryType(entry_type).value)

        query += " ORDER BY created_at, id"

        rows = await self._fetch(query, params, "ledger_entries")
        return [self._row_to_ledger_entry(row) for row in rows]

    def _row_to_ledger_entry(self, row: aiosqlite.Row) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            user_id=row["user_id"],
            market_id=row["market_id"],
            entry_type=LedgerEntryType(row["entry_type"]),
            direction=Direction(row["direction"]),
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            side=Side(row["side"]) if row["side"] else None,
            reference_id=row["reference_id"],
            meta=json.loads(row["meta"] or "{}"),
            created_at=_parse_ts(row["created_at"]) or _now(),
        )

    # ============ Payout Operations ============

    async def insert_payout(self, payout: Payout) -> Payout:
        await self._execute(
            """
            INSERT INTO payouts
            (id, user_id, market_id, amount, currency, status, destination_wallet,
             tx_signature, error, created_at, processed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payout.id,
                payout.user_id,
                payout.market_id,
                _money(payout.amount),
                payout.currency,
                PayoutStatus(payout.status).value,
                payout.destination_wallet,
                payout.tx_signature,
                payout.error,
                _ts(payout.created_at),
                _ts(payout.processed_at),
            ),
            "payouts",
        )
        return payout

    async def get_payouts(
        self,
        market_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
    ) -> list[Payout]:
        query = "SELECT * FROM payouts WHERE 1=1"
        params: list[Any] = []

        if market_id:
            query += " AND market_id = ?"
            params.append(market_id)

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if status:
            query += " AND status = ?"
            params.append(PayoutStatus(status).value)

        query += " ORDER BY created_at, id"

        rows = await self._fetch(query, params, "payouts")
        return [
            Payout(
                id=row["id"],
                user_id=row["user_id"],
                market_id=row["market_id"],
                amount=Decimal(row["amount"]),
                currency=row["currency"],
                status=PayoutStatus(row["status"]),
                destination_wallet=row["destination_wallet"],
                tx_signature=row["tx_signature"],
                error=row["error"],
                created_at=_parse_ts(row["created_at"]) or _now(),
                processed_at=_parse_ts(row["processed_at"]),
            )
            for row in rows
        ]

    # ============ Receipt Operations ============

    async def receipt_exists(
        self,
        market_id: str,
        user_id: str,
        receipt_type: ReceiptType,
    ) -> bool:
        row = await self._fetch_one(
            """
            SELECT id FROM settlement_receipts
            WHERE market_id = ? AND user_id = ? AND receipt_type = ?
            """,
            (market_id, user_id, ReceiptType(receipt_type).value),
            "settlement_receipts",
        )
        return row is not None

    async def create_receipt(self, receipt: SettlementReceipt) -> SettlementReceipt:
        """Insert an INITIATED receipt.

        Raises:
            DuplicateRecordError: a receipt for (market, user, type) exists.
        """
        await self._execute(
            """
            INSERT INTO settlement_receipts
            (id, settlement_queue_id, market_id, game_id, user_id, receipt_type,
             status, amount, currency, payout_id, ledger_entry_id, tx_hash, initiated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                receipt.id,
                receipt.settlement_queue_id,
                receipt.market_id,
                receipt.game_id,
                receipt.user_id,
                ReceiptType(receipt.receipt_type).value,
                ReceiptStatus.INITIATED.value,
                _money(receipt.amount),
                receipt.currency,
                receipt.payout_id,
                receipt.ledger_entry_id,
                receipt.tx_hash,
                _ts(receipt.initiated_at),
            ),
            "settlement_receipts",
        )
        receipt.status = ReceiptStatus.INITIATED
        return receipt

    async def confirm_receipt(
        self,
        receipt_id: str,
        payout_id: Optional[str] = None,
        ledger_entry_id: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
    ) -> None:
        await self._execute(
            """
            UPDATE settlement_receipts
            SET status = 'CONFIRMED', payout_id = COALESCE(?, payout_id),
                ledger_entry_id = COALESCE(?, ledger_entry_id), confirmed_at = ?
            WHERE id = ?
            """,
            (payout_id, ledger_entry_id, _ts(confirmed_at or _now()), receipt_id),
            "settlement_receipts",
        )

    async def fail_receipt(
        self,
        receipt_id: str,
        reason: str,
        failed_at: Optional[datetime] = None,
    ) -> None:
        await self._execute(
            """
            UPDATE settlement_receipts
            SET status = 'FAILED', failure_reason = ?, failed_at = ?
            WHERE id = ?
            """,
            (reason, _ts(failed_at or _now()), receipt_id),
            "settlement_receipts",
        )

    async def get_receipts(
        self,
        market_id: Optional[str] = None,
        game_id: Optional[int] = None,
        user_id: Optional[str] = None,
        status: Optional[ReceiptStatus] = None,
    ) -> list[SettlementReceipt]:
        query = "SELECT * FROM settlement_receipts WHERE 1=1"
        params: list[Any] = []

        if market_id:
            query += " AND market_id = ?"
            params.append(market_id)

        if game_id is not None:
            query += " AND game_id = ?"
            params.append(game_id)

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if status:
            query += " AND status = ?"
            params.append(ReceiptStatus(status).value)

        query += " ORDER BY initiated_at, id"

        rows = await self._fetch(query, params, "settlement_receipts")
        return [self._row_to_receipt(row) for row in rows]

    def _row_to_receipt(self, row: aiosqlite.Row) -> SettlementReceipt:
        return SettlementReceipt(
            id=row["id"],
            settlement_queue_id=row["settlement_queue_id"],
            market_id=row["market_id"],
            game_id=row["game_id"],
            user_id=row["user_id"],
            receipt_type=ReceiptType(row["receipt_type"]),
            status=ReceiptStatus(row["status"]),
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            payout_id=row["payout_id"],
            ledger_entry_id=row["ledger_entry_id"],
            tx_hash=row["tx_hash"],
            initiated_at=_parse_ts(row["initiated_at"]) or _now(),
            confirmed_at=_parse_ts(row["confirmed_at"]),
            failed_at=_parse_ts(row["failed_at"]),
            failure_reason=row["failure_reason"],
        )

    # ============ Market Settlement Operations ============

    async def insert_market_settlement(self, settlement: MarketSettlement) -> MarketSettlement:
        """Insert the settlement record of a market.

        Raises:
            DuplicateRecordError: the market already has one.
        """
        await self._execute(
            """
            INSERT INTO market_settlements
            (id, market_id, game_id, outcome, total_volume, total_payouts, payout_count,
             gross_pool, winning_pool, losing_pool, platform_fee_amount,
             net_distributed_amount, winners_count, losers_count, fee_rate,
             settled_by, settled_at, meta)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                settlement.id,
                settlement.market_id,
                settlement.game_id,
                settlement.outcome,
                _money(settlement.total_volume),
                _money(settlement.total_payouts),
                settlement.payout_count,
                _money(settlement.gross_pool),
                _money(settlement.winning_pool),
                _money(settlement.losing_pool),
                _money(settlement.platform_fee_amount),
                _money(settlement.net_distributed_amount),
                settlement.winners_count,
                settlement.losers_count,
                _money(settlement.fee_rate),
                settlement.settled_by,
                _ts(settlement.settled_at),
                _json(settlement.meta),
            ),
            "market_settlements",
        )
        return settlement

    async def get_market_settlement(self, market_id: str) -> Optional[MarketSettlement]:
        row = await self._fetch_one(
            "SELECT * FROM market_settlements WHERE market_id = ?",
            (market_id,),
            "market_settlements",
        )
        if row is None:
            return None
        return self._row_to_settlement(row)

    async def get_market_settlements(self, game_id: int) -> list[MarketSettlement]:
        rows = await self._fetch(
            "SELECT * FROM market_settlements WHERE game_id = ? ORDER BY settled_at, id",
            (game_id,),
            "market_settlements",
        )
        return [self._row_to_settlement(row) for row in rows]

    async def count_settlements_for_game(self, game_id: int) -> int:
        row = await self._fetch_one(
            "SELECT COUNT(*) AS n FROM market_settlements WHERE game_id = ?",
            (game_id,),
            "market_settlements",
        )
        return int(row["n"]) if row else 0

    def _row_to_settlement(self, row: aiosqlite.Row) -> MarketSettlement:
        return MarketSettlement(
            id=row["id"],
            market_id=row["market_id"],
            game_id=row["game_id"],
            outcome=row["outcome"],
            total_volume=Decimal(row["total_volume"]),
            total_payouts=Decimal(row["total_payouts"]),
            payout_count=row["payout_count"],
            gross_pool=Decimal(row["gross_pool"]),
            winning_pool=Decimal(row["winning_pool"]),
            losing_pool=Decimal(row["losing_pool"]),
            platform_fee_amount=Decimal(row["platform_fee_amount"]),
            net_distributed_amount=Decimal(row["net_distributed_amount"]),
            winners_count=row["winners_count"],
            losers_count=row["losers_count"],
            fee_rate=Decimal(row["fee_rate"]),
            settled_by=row["settled_by"],
            settled_at=_parse_ts(row["settled_at"]) or _now(),
            meta=json.loads(row["meta"] or "{}"),
        )

    # ============ Treasury Operations ============

    async def insert_treasury_entry(self, entry: TreasuryEntry) -> TreasuryEntry:
        """Insert a treasury row.

        Raises:
            DuplicateRecordError: the settlement already has a fee entry.
        """
        await self._execute(
            """
            INSERT INTO treasury_ledger
            (id, settlement_id, market_id, game_id, entry_type, amount, fee_rate,
             gross_pool, losing_pool, meta, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.settlement_id,
                entry.market_id,
                entry.game_id,
                TreasuryEntryType(entry.entry_type).value,
                _money(entry.amount),
                _money(entry.fee_rate) if entry.fee_rate is not None else None,
                _money(entry.gross_pool) if entry.gross_pool is not None else None,
                _money(entry.losing_pool) if entry.losing_pool is not None else None,
                _json(entry.meta),
                _ts(entry.created_at),
            ),
            "treasury_ledger",
        )
        return entry

    async def get_treasury_entries(
        self,
        limit: Optional[int] = None,
        entry_type: Optional[TreasuryEntryType] = None,
    ) -> list[TreasuryEntry]:
        """Treasury rows, newest first."""
        query = "SELECT * FROM treasury_ledger WHERE 1=1"
        params: list[Any] = []

        if entry_type:
            query += " AND entry_type = ?"
            params.append(TreasuryEntryType(entry_type).value)

        query += " ORDER BY created_at DESC, id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await self._fetch(query, params, "treasury_ledger")
        return [self._row_to_treasury_entry(row) for row in rows]

    async def get_treasury_entry_for_settlement(self, settlement_id: str) -> Optional[TreasuryEntry]:
        row = await self._fetch_one(
            "SELECT * FROM treasury_ledger WHERE settlement_id = ?",
            (settlement_id,),
            "treasury_ledger",
        )
        if row is None:
            return None
        return self._row_to_treasury_entry(row)

    def _row_to_treasury_entry(self, row: aiosqlite.Row) -> TreasuryEntry:
        return TreasuryEntry(
            id=row["id"],
            settlement_id=row["settlement_id"],
            market_id=row["market_id"],
            game_id=row["game_id"],
            entry_type=TreasuryEntryType(row["entry_type"]),
            amount=Decimal(row["amount"]),
            fee_rate=_dec(row["fee_rate"]),
            gross_pool=_dec(row["gross_pool"]),
            losing_pool=_dec(row["losing_pool"]),
            meta=json.loads(row["meta"] or "{}"),
            created_at=_parse_ts(row["created_at"]) or _now(),
        )

    # ============ Settlement Queue Operations ============

    async def insert_queue_item(self, item: SettlementQueueItem) -> SettlementQueueItem:
        """Insert a queue item.

        Raises:
            DuplicateRecordError: the game is already queued.
        """
        await self._execute(
            """
            INSERT INTO settlement_queue
            (id, game_id, league, external_game_id, provider, status, outcome, reason,
             attempts, next_attempt_at, locked_by, locked_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.game_id,
                item.league,
                item.external_game_id,
                item.provider,
                QueueStatus(item.status).value,
                item.outcome,
                item.reason,
                item.attempts,
                _ts(item.next_attempt_at),
                item.locked_by,
                _ts(item.locked_at),
                _ts(item.created_at),
                _ts(item.updated_at),
            ),
            "settlement_queue",
        )
        return item

    async def get_queue_item(self, item_id: str) -> Optional[SettlementQueueItem]:
        row = await self._fetch_one(
            "SELECT * FROM settlement_queue WHERE id = ?", (item_id,), "settlement_queue"
        )
        if row is None:
            return None
        return self._row_to_queue_item(row)

    async def get_queue_item_for_game(self, game_id: int) -> Optional[SettlementQueueItem]:
        row = await self._fetch_one(
            "SELECT * FROM settlement_queue WHERE game_id = ?", (game_id,), "settlement_queue"
        )
        if row is None:
            return None
        return self._row_to_queue_item(row)

    async def lock_next_queue_item(
        self,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[SettlementQueueItem]:
        """Atomically claim the next due item for worker_id.

        QUEUED and FAILED items whose next_attempt_at has passed and that
        nobody holds are eligible. The select and the claim are one
        statement, so two workers can never claim the same item.
        """
        stamp = _ts(now or _now())
        _, rows = await self._execute(
            LOCK_NEXT_SQL,
            (worker_id, stamp, stamp, stamp),
            "settlement_queue",
            returning=True,
        )
        if not rows:
            return None
        return self._row_to_queue_item(rows[0])

    async def complete_queue_item(self, item_id: str, now: Optional[datetime] = None) -> None:
        await self._execute(
            """
            UPDATE settlement_queue
            SET status = 'DONE', locked_by = NULL, locked_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (_ts(now or _now()), item_id),
            "settlement_queue",
        )

    async def fail_queue_item(
        self,
        item_id: str,
        reason: str,
        attempts: int,
        next_attempt_at: datetime,
        now: Optional[datetime] = None,
    ) -> None:
        await self._execute(
            """
            UPDATE settlement_queue
            SET status = 'FAILED', reason = ?, attempts = ?, next_attempt_at = ?,
                locked_by = NULL, locked_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (reason, attempts, _ts(next_attempt_at), _ts(now or _now()), item_id),
            "settlement_queue",
        )

    async def reset_queue_item(self, item_id: str, now: Optional[datetime] = None) -> bool:
        """Put a FAILED or SKIPPED item back to QUEUED, due immediately."""
        stamp = _ts(now or _now())
        rowcount, _ = await self._execute(
            """
            UPDATE settlement_queue
            SET status = 'QUEUED', next_attempt_at = ?, locked_by = NULL,
                locked_at = NULL, updated_at = ?
            WHERE id = ? AND status IN ('FAILED', 'SKIPPED')
            """,
            (stamp, stamp, item_id),
            "settlement_queue",
        )
        return rowcount > 0

    async def release_stale_locks(self, cutoff: datetime, now: Optional[datetime] = None) -> int:
        """Return PROCESSING items locked before cutoff to QUEUED."""
        rowcount, _ = await self._execute(
            """
            UPDATE settlement_queue
            SET status = 'QUEUED', locked_by = NULL, locked_at = NULL,
                reason = 'stale lock reclaimed', updated_at = ?
            WHERE status = 'PROCESSING' AND locked_at < ?
            """,
            (_ts(now or _now()), _ts(cutoff)),
            "settlement_queue",
        )
        return rowcount

    async def list_queue_items(
        self,
        statuses: Optional[Iterable[QueueStatus]] = None,
        league: Optional[str] = None,
        limit: int = 100,
        updated_before: Optional[datetime] = None,
        locked_before: Optional[datetime] = None,
        min_attempts: Optional[int] = None,
    ) -> list[SettlementQueueItem]:
        query = "SELECT * FROM settlement_queue WHERE 1=1"
        params: list[Any] = []

        status_values = [QueueStatus(s).value for s in statuses] if statuses else []
        if status_values:
            query += f" AND status IN ({', '.join('?' for _ in status_values)})"
            params.extend(status_values)

        if league:
            query += " AND league = ?"
            params.append(league)

        if updated_before is not None:
            query += " AND updated_at < ?"
            params.append(_ts(updated_before))

        if locked_before is not None:
            query += " AND locked_at IS NOT NULL AND locked_at < ?"
            params.append(_ts(locked_before))

        if min_attempts is not None:
            query += " AND attempts >= ?"
            params.append(min_attempts)

        query += " ORDER BY created_at DESC, id LIMIT ?"
        params.append(limit)

        rows = await self._fetch(query, params, "settlement_queue")
        return [self._row_to_queue_item(row) for row in rows]

    async def count_queue_by_status(self) -> dict[str, int]:
        rows = await self._fetch(
            "SELECT status, COUNT(*) AS n FROM settlement_queue GROUP BY status",
            (),
            "settlement_queue",
        )
        return {row["status"]: int(row["n"]) for row in rows}

    def _row_to_queue_item(self, row: aiosqlite.Row) -> SettlementQueueItem:
        return SettlementQueueItem(
            id=row["id"],
            game_id=row["game_id"],
            league=row["league"],
            external_game_id=row["external_game_id"],
            provider=row["provider"],
            status=QueueStatus(row["status"]),
            outcome=row["outcome"],
            reason=row["reason"],
            attempts=row["attempts"],
            next_attempt_at=_parse_ts(row["next_attempt_at"]) or _now(),
            locked_by=row["locked_by"],
            locked_at=_parse_ts(row["locked_at"]),
            created_at=_parse_ts(row["created_at"]) or _now(),
            updated_at=_parse_ts(row["updated_at"]) or _now(),
        )

    # ============ Health Check ============

    async def health_check(self) -> dict[str, Any]:
        """Check database health.

        Returns:
            Health check result dictionary.
        """
        if not self.is_connected:
            return {
                "status": "unhealthy",
                "message": "Database not connected",
            }

        try:
            await self._fetch("SELECT 1", (), "sqlite_master")
            return {
                "status": "healthy",
                "message": "Database connected",
                "db_path": self._db_path,
            }
        except ToteError as e:
            return {
                "status": "unhealthy",
                "message": f"Database error: {e}",
            }
