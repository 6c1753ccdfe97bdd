"""
PostgreSQL connection pool.

A Database is created once per connection key by DatabaseRegistry and
passed explicitly to the introspector, the query engine and the routes.
Every statement runs acquire -> execute -> release on a worker thread so
callers can give up waiting after a timeout without leaking the
connection: the worker returns it to the pool when the driver call ends.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import Any, Optional, Type

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import DatabaseSettings
from .errors import GeoServicesError, QueryTimeout

logger = logging.getLogger(__name__)


class Database:
    """Connection pool plus the worker threads that run statements."""

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings
        self._pool = ConnectionPool(
            settings.url,
            min_size=settings.min_size,
            max_size=settings.max_size,
            timeout=settings.connect_timeout,
            max_idle=settings.idle_timeout,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
            name="pg-geo",
        )
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_size, thread_name_prefix="pg-geo-sql"
        )

    def open(self):
        self._pool.open(wait=False)

    def close(self):
        self._pool.close()
        self._executor.shutdown(wait=False)

    @contextmanager
    def connection(self):
        """Acquire a pooled connection; it is released on every exit path."""
        with self._pool.connection() as conn:
            yield conn

    def fetch_all(
        self,
        query,
        params: Optional[list] = None,
        timeout: Optional[float] = None,
        on_timeout: Type[GeoServicesError] = QueryTimeout,
    ) -> list[dict[str, Any]]:
        """Run one statement and return its rows, waiting at most `timeout` seconds."""
        future = self._executor.submit(self._fetch_all, query, params)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.error("Statement gave up after %.1fs", timeout)
            raise on_timeout(f"Database call exceeded {timeout:g}s timeout")

    def _fetch_all(self, query, params):
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return []
                return cur.fetchall()


class DatabaseRegistry:
    """Creates one Database per connection key, safe under concurrent first use."""

    def __init__(self):
        self._databases: dict[tuple, Database] = {}
        self._lock = threading.Lock()

    def get(self, settings: DatabaseSettings) -> Database:
        key = settings.pool_key()
        with self._lock:
            db = self._databases.get(key)
            if db is None:
                logger.info("Creating connection pool (max_size=%d)", settings.max_size)
                db = Database(settings)
                db.open()
                self._databases[key] = db
            return db

    def close_all(self):
        with self._lock:
            for db in self._databases.values():
                db.close()
            self._databases.clear()
