from contextlib import asynccontextmanager
from typing import Any, Mapping, Optional, Protocol

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .settings import DATABASE_URL, PENDING_TABLE, CONFIRMED_TABLE


class StoreError(Exception):
    pass


class DuplicateRecord(StoreError):
    pass


class RecordStore(Protocol):
    async def select_by_key(self, table: str, key: str) -> Optional[dict[str, Any]]: ...

    async def insert(self, table: str, record: Mapping[str, Any]) -> None: ...

    async def delete_by_key(self, table: str, key: str) -> None: ...


@asynccontextmanager
async def get_conn(conninfo: str = DATABASE_URL):
    conn = await psycopg.AsyncConnection.connect(conninfo, row_factory=dict_row)
    try:
        yield conn
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise
    finally:
        await conn.close()


# Each table keeps one key column plus the full record as jsonb.
DEFAULT_KEY_COLUMNS = {
    PENDING_TABLE: "ref_command",
    CONFIRMED_TABLE: "payment_ref",
}


class PostgresRecordStore:
    """Key-addressed record store backed by Postgres tables of (key, record jsonb)."""

    def __init__(self, conninfo: str = DATABASE_URL, key_columns: Optional[Mapping[str, str]] = None):
        self.conninfo = conninfo
        self.key_columns = dict(key_columns or DEFAULT_KEY_COLUMNS)

    def _key_column(self, table: str) -> str:
        try:
            return self.key_columns[table]
        except KeyError:
            raise StoreError(f"Unknown table {table!r}") from None

    async def select_by_key(self, table: str, key: str) -> Optional[dict[str, Any]]:
        query = sql.SQL("SELECT record FROM {} WHERE {} = %s").format(
            sql.Identifier(table), sql.Identifier(self._key_column(table))
        )
        try:
            async with get_conn(self.conninfo) as conn:
                cur = await conn.execute(query, (key,))
                row = await cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
        if not row:
            return None
        return row["record"]

    async def insert(self, table: str, record: Mapping[str, Any]) -> None:
        column = self._key_column(table)
        query = sql.SQL("INSERT INTO {} ({}, record) VALUES (%s, %s)").format(
            sql.Identifier(table), sql.Identifier(column)
        )
        try:
            async with get_conn(self.conninfo) as conn:
                await conn.execute(query, (record.get(column), Jsonb(dict(record))))
        except errors.UniqueViolation as exc:
            raise DuplicateRecord(str(exc)) from exc
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc

    async def delete_by_key(self, table: str, key: str) -> None:
        query = sql.SQL("DELETE FROM {} WHERE {} = %s").format(
            sql.Identifier(table), sql.Identifier(self._key_column(table))
        )
        try:
            async with get_conn(self.conninfo) as conn:
                await conn.execute(query, (key,))
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc
