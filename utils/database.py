"""
utils/database.py
-----------------
Parameterised query executor over a bounded psycopg connection pool.

A connection is held for exactly one statement and returned to the pool
before the caller does anything else, so no connection is ever held
across an unrelated outbound call.

    retry (3, 1s..10s) -> timeout (10s) -> pool.connection() -> execute

Reads retry connection-level failures (``OperationalError``, pool timeouts
and our own deadline).  A timed-out statement is abandoned, not cancelled,
and may still commit, so writes (``idempotent=False``) retry only when no
connection was obtained.  Everything the driver raises surfaces as
``DatabaseError``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from utils.resilience import RetryPolicy, retry_with_backoff, with_timeout
from utils.settings import _get_float, _get_int

log = logging.getLogger("utils.database")

QUERY_TIMEOUT_S: float = _get_float("DB_QUERY_TIMEOUT_S", 10.0)
SLOW_DB_MS: int = _get_int("SLOW_DB_MS", 3000)


class DatabaseError(Exception):
    """A query failed after retries."""


def _is_transient(err: BaseException) -> bool:
    return isinstance(err, (psycopg.OperationalError, TimeoutError))


def _never_sent(err: BaseException) -> bool:
    return isinstance(err, PoolTimeout)


DB_RETRY = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0, is_retryable=_is_transient)


class Database:
    def __init__(
        self,
        conninfo: str,
        max_size: int = 10,
        retry_policy: RetryPolicy = DB_RETRY,
        timeout_s: float = QUERY_TIMEOUT_S,
    ) -> None:
        self._pool = AsyncConnectionPool(
            conninfo,
            min_size=1,
            max_size=max_size,
            open=False,
            kwargs={"row_factory": dict_row},
        )
        self._retry_policy = retry_policy
        self._write_policy = dataclasses.replace(retry_policy, is_retryable=_never_sent)
        self._timeout_s = timeout_s

    async def open(self) -> None:
        await self._pool.open()
        log.info("db_pool_opened", extra={"kv": {"max_size": self._pool.max_size}})

    async def close(self) -> None:
        await self._pool.close()
        log.info("db_pool_closed")

    async def query(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        idempotent: bool = True,
    ) -> List[Dict[str, Any]]:
        """Run one statement and return its rows (empty for statements without a result).

        Pass ``idempotent=False`` for statements that must not run twice.
        """
        policy = self._retry_policy if idempotent else self._write_policy

        async def attempt() -> List[Dict[str, Any]]:
            return await with_timeout(self._execute(sql, params), self._timeout_s, "db_query")

        t0 = time.perf_counter()
        try:
            rows = await retry_with_backoff(attempt, policy, "db_query")
        except (psycopg.Error, TimeoutError) as e:
            log.error("db_query_failed", extra={"kv": {"error": str(e), "error_type": type(e).__name__}})
            raise DatabaseError(f"Database query failed: {e}") from e
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        if elapsed_ms > SLOW_DB_MS:
            log.warning("slow_db_query", extra={"kv": {"elapsed_ms": elapsed_ms, "sql": sql.split()[0]}})
        return rows

    async def _execute(self, sql: str, params: Optional[Sequence[Any]]) -> List[Dict[str, Any]]:
        async with self._pool.connection() as conn:
            cur = await conn.execute(sql, params)
            if cur.description is None:
                return []
            return await cur.fetchall()
