from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from app.config import settings

logger = logging.getLogger(__name__)

_pool: ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def init_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None or not settings.db_enabled:
            return
        dsn = settings.db_dsn.replace("postgresql+psycopg2://", "postgresql://")
        # Refund transactions keep their connection for the whole gateway call
        _pool = ThreadedConnectionPool(1, 20, dsn=dsn)


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.closeall()
            _pool = None


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection]:
    """Yield a pooled connection inside one transaction.

    Commits when the block exits normally and rolls back when it raises.
    Yields ``None`` when no database is configured.
    """
    if _pool is None:
        init_pool()
    if _pool is None:
        yield None  # type: ignore[misc]
        return
    conn: psycopg2.extensions.connection | None = None
    try:
        # Retry once on connections the server already closed
        for attempt in range(2):
            conn = _pool.getconn()
            try:
                if settings.db_schema:
                    with conn.cursor() as cur:
                        cur.execute(f"SET search_path TO {settings.db_schema}")
                break
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                _pool.putconn(conn, close=True)
                conn = None
                if attempt == 1:
                    raise
        yield conn  # type: ignore[misc]
        conn.commit()  # type: ignore[union-attr]
    except BaseException:
        if conn is not None:
            try:
                conn.rollback()
            except psycopg2.Error as exc:
                logger.warning("rollback failed", extra={"event": str(exc)})
        raise
    finally:
        if conn is not None:
            _pool.putconn(conn)
