# core/database.py
"""
SQLAlchemy engine and session factory setup
"""

import logging
import time

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from core.database_models import Base

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD = 1.0


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ('sqlite://', 'sqlite:///:memory:') or 'mode=memory' in database_url


class Database:
    """Owns the engine and the session factory used by every store"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_engine(database_url, **self._engine_options(database_url, echo))
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._install_listeners()

    @staticmethod
    def _engine_options(database_url: str, echo: bool) -> dict:
        options = {'echo': echo, 'pool_pre_ping': True}

        if database_url.startswith('sqlite'):
            connect_args = {'check_same_thread': False, 'timeout': 20}
            if _is_memory_sqlite(database_url):
                # One shared connection keeps the in-memory database alive
                options.update({'poolclass': StaticPool, 'connect_args': connect_args})
            else:
                # Single writer: SQLite gets exactly one pooled connection
                options.update({
                    'poolclass': QueuePool,
                    'pool_size': 1,
                    'max_overflow': 0,
                    'pool_timeout': 30,
                    'connect_args': connect_args,
                })
        else:
            options.update({
                'pool_size': 10,
                'max_overflow': 0,
                'pool_recycle': 3600,
            })
            if 'postgresql' in database_url:
                options['connect_args'] = {
                    'application_name': 'firewatch',
                    'connect_timeout': 10,
                }
        return options

    def _install_listeners(self) -> None:
        if self.engine.dialect.name == 'sqlite':
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragmas(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                if not _is_memory_sqlite(self.database_url):
                    cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

        @event.listens_for(self.engine, "before_cursor_execute")
        def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = time.monotonic()

        @event.listens_for(self.engine, "after_cursor_execute")
        def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            total = time.monotonic() - context._query_start_time
            if total > SLOW_QUERY_THRESHOLD:
                logger.warning(f"Slow query ({total:.2f}s): {statement[:100]}...")

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text('SELECT 1'))

    def dispose(self) -> None:
        self.engine.dispose()


def init_database(database_url: str, echo: bool = False) -> Database:
    """Create the engine, the tables and the session factory"""
    db = Database(database_url, echo=echo)
    db.create_all()
    shown = database_url.split('@')[-1] if '@' in database_url else database_url
    logger.info(f"Database configured: {shown}")
    return db
