"""SQLite persistence for wallet links, payment requests and invoices.

All writes share one connection and one lock, which is what makes
:meth:`Database.compare_and_set` atomic for every component in the process.
Rows come back as plain dicts.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from pathlib import Path
from typing import Any, Optional

import aiosqlite

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _ident(name: str) -> str:
    """Guard identifiers that get interpolated into SQL."""
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class Database:
    """The ProofPay store, one file per ``.proofpay`` directory.

    Parameters
    ----------
    db_path:
        Location of the SQLite file. Missing parent directories are made
        by :meth:`connect`.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the file and bring the schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row

        # The watcher, the sweeper and the CLI may read while another process writes.
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        # Sub-wallets cascade away with their primary.
        await self._conn.execute("PRAGMA foreign_keys=ON;")

        await self._create_schema()

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError(f"Database {self.db_path} is not open; call connect() first.")
        return self._conn

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Run one write statement in its own transaction.

        The cursor is returned for ``rowcount``.
        """
        conn = self._require()
        async with self._write_lock:
            try:
                cursor = await conn.execute(sql, params)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        async with self._require().execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._require().execute(sql, params) as cursor:
            return [dict(row) for row in await cursor.fetchall()]

    async def compare_and_set(
        self,
        table: str,
        key_column: str,
        key: Any,
        column: str,
        expected: Any,
        changes: dict[str, Any],
    ) -> bool:
        """Conditionally update one row.

        The update is applied only if ``column`` currently equals *expected*;
        the check and the write happen in a single ``UPDATE ... WHERE``
        statement. Returns ``True`` if the row was changed, ``False`` if the
        row is missing or another writer got there first.
        """
        if not changes:
            raise ValueError("compare_and_set needs at least one column to change")
        assignments = ", ".join(f"{_ident(c)} = ?" for c in changes)
        sql = (
            f"UPDATE {_ident(table)} SET {assignments} "
            f"WHERE {_ident(key_column)} = ? AND {_ident(column)} = ?"
        )
        cursor = await self.execute(sql, (*changes.values(), key, expected))
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def _create_schema(self) -> None:
        conn = self._require()

        await conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS wallet_links (
                address TEXT PRIMARY KEY,
                label TEXT NOT NULL DEFAULT '',
                parent_address TEXT,
                is_primary INTEGER NOT NULL DEFAULT 0,
                attestation_json TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (parent_address) REFERENCES wallet_links(address)
                    ON DELETE CASCADE,
                CHECK (
                    (is_primary = 1 AND parent_address IS NULL)
                    OR (is_primary = 0 AND parent_address IS NOT NULL)
                ),
                CHECK (parent_address IS NULL OR parent_address != address)
            );

            CREATE INDEX IF NOT EXISTS idx_wallet_links_parent
                ON wallet_links(parent_address);

            CREATE TABLE IF NOT EXISTS payment_requests (
                id TEXT PRIMARY KEY,
                requester_address TEXT NOT NULL,
                chain_id INTEGER NOT NULL,
                token_address TEXT NOT NULL,
                token_symbol TEXT DEFAULT '',
                amount TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                payment_link TEXT NOT NULL,
                customer_name TEXT DEFAULT '',
                description TEXT DEFAULT '',
                tags_json TEXT DEFAULT '[]',
                additional_notes TEXT DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                payer_address TEXT,
                settlement_tx_hash TEXT,
                paid_at TEXT,
                scan_from_block INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_payment_requests_requester
                ON payment_requests(requester_address);
            CREATE INDEX IF NOT EXISTS idx_payment_requests_status
                ON payment_requests(status, expires_at);

            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                document_id TEXT UNIQUE NOT NULL,
                request_id TEXT,
                kind TEXT NOT NULL DEFAULT 'income',
                customer_name TEXT DEFAULT '',
                customer_address TEXT DEFAULT '',
                description TEXT DEFAULT '',
                amount TEXT NOT NULL,
                token_symbol TEXT DEFAULT '',
                decimals INTEGER NOT NULL DEFAULT 18,
                chain_id INTEGER NOT NULL DEFAULT 1,
                from_address TEXT,
                to_address TEXT NOT NULL,
                wallet_address TEXT NOT NULL,
                transaction_hash TEXT,
                block_number INTEGER,
                status TEXT NOT NULL DEFAULT 'unpaid',
                signature_status TEXT NOT NULL DEFAULT 'pending',
                signed_by TEXT,
                signed_at TEXT,
                signature TEXT,
                signed_message TEXT,
                created_at TEXT NOT NULL,
                paid_at TEXT,
                FOREIGN KEY (request_id) REFERENCES payment_requests(id)
            );

            CREATE INDEX IF NOT EXISTS idx_invoices_request
                ON invoices(request_id);
            CREATE INDEX IF NOT EXISTS idx_invoices_wallet
                ON invoices(wallet_address);
            """
        )
        await conn.commit()


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def get_database(home_dir: Path) -> Database:
    """The database file of a ``.proofpay`` directory (not yet connected)."""
    return Database(Path(home_dir) / "proofpay.db")
