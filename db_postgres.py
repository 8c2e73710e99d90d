"""
PostgreSQL Store for the Blood Exchange
Provides the same unit-of-work interface as the SQLite DatabaseManager,
with real row locks (FOR UPDATE / FOR UPDATE SKIP LOCKED).
"""
import os
import logging

import psycopg2
import psycopg2.extras

from database import BaseDatabaseManager

logger = logging.getLogger(__name__)


class PostgresRowWrapper:
    """Wrapper to make psycopg2 rows behave like sqlite3.Row"""
    def __init__(self, row_dict):
        self._dict = row_dict or {}

    def __getitem__(self, key):
        if isinstance(key, int):
            return list(self._dict.values())[key]
        return self._dict.get(key)

    def keys(self):
        return self._dict.keys()


class PostgresCursorWrapper:
    """Wrapper to make psycopg2 cursor accept SQLite-style ? placeholders"""
    def __init__(self, cursor):
        self._cursor = cursor
        self.rowcount = 0

    def execute(self, sql: str, params=None):
        pg_sql = sql.replace('?', '%s')

        try:
            if params:
                self._cursor.execute(pg_sql, params)
            else:
                self._cursor.execute(pg_sql)
            self.rowcount = self._cursor.rowcount
        except Exception as e:
            logger.error(f"PostgreSQL execute error: {e}\nSQL: {pg_sql}\nParams: {params}")
            raise

        return self

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None:
            return None
        if hasattr(row, 'keys'):
            return PostgresRowWrapper(dict(row))
        return row

    def fetchall(self):
        rows = self._cursor.fetchall()
        return [PostgresRowWrapper(dict(row)) if hasattr(row, 'keys') else row for row in rows]


class PostgresConnectionWrapper:
    """Wrapper to make psycopg2 connection behave like sqlite3 connection"""
    def __init__(self, conn):
        self._conn = conn

    def cursor(self):
        return PostgresCursorWrapper(
            self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        )

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


class PostgresDatabaseManager(BaseDatabaseManager):
    """PostgreSQL store - same unit_of_work() contract as DatabaseManager"""

    dialect = "postgres"

    def __init__(self, database_url: str = None, init: bool = True):
        super().__init__()
        self.database_url = database_url or os.environ.get('DATABASE_URL')
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable not set")

        logger.info("Initializing PostgreSQL store")
        if init:
            self.init_database()

    def get_connection(self) -> PostgresConnectionWrapper:
        """Get a PostgreSQL connection (transaction opens on first statement)"""
        try:
            conn = psycopg2.connect(self.database_url)
            conn.autocommit = False
            return PostgresConnectionWrapper(conn)
        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise
