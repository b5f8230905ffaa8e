"""SQLite connection management for the portal.

A :class:`ConnectionManager` owns the one engine that talks to the on-disk
store. It is constructed by the application factory and shared through
``app.state``; nothing else opens its own connection to the database file.
"""

import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from kcs_portal.core import config

logger = logging.getLogger(__name__)

Base = declarative_base()

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA cache_size = 1000",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA mmap_size = 268435456",
)

RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 5.0

T = TypeVar("T")


class DatabaseError(Exception):
    """Base class for store-layer failures."""


class InitializationError(DatabaseError):
    """The database file could not be created or opened."""


class SchemaError(DatabaseError):
    """The schema script is missing or failed to apply."""


class QueryError(DatabaseError):
    """A unit of work kept failing after every retry."""


class BackupError(DatabaseError):
    """A snapshot of the store could not be written."""


RETRYABLE_ERRORS = (SQLAlchemyError, sqlite3.Error, DatabaseError)


def _apply_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def backoff_delay(attempt: int) -> float:
    return min(RETRY_BASE_DELAY_SECONDS * 2 ** (attempt - 1), RETRY_MAX_DELAY_SECONDS)


class ConnectionManager:
    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        schema_path: str | Path | None = None,
        root_dir: str | Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._root_dir = Path(root_dir or config.ROOT_DIR)
        self._db_path = self._resolve(db_path or config.DATABASE_PATH or config.DEFAULT_DATABASE_PATH)
        self._schema_path = Path(schema_path) if schema_path else SCHEMA_PATH
        self._sleep = sleep
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None
        self._is_initialized = False
        self._lock = RLock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def schema_path(self) -> Path:
        return self._schema_path

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self._root_dir / candidate
        return candidate.resolve()

    def open(self) -> Engine:
        """Open the configured file and bring its schema up to date."""
        self._initialize()
        return self._engine

    def _initialize(self, create: bool = True) -> None:
        with self._lock:
            self._dispose()
            logger.info('Connecting to database at %s', self._db_path)
            try:
                if create:
                    if not self._db_path.parent.exists():
                        self._db_path.parent.mkdir(parents=True, exist_ok=True)
                        logger.info('Created database directory %s', self._db_path.parent)
                elif not self._db_path.exists():
                    raise InitializationError(f'Database file not found: {self._db_path}')

                engine = create_engine(f'sqlite:///{self._db_path}')
                event.listen(engine, 'connect', _apply_pragmas)
                with engine.connect() as connection:
                    connection.execute(text('SELECT 1'))
            except InitializationError:
                raise
            except (OSError, SQLAlchemyError) as exc:
                logger.error('Failed to open database at %s: %s', self._db_path, exc)
                raise InitializationError(f'Could not open database at {self._db_path}') from exc

            self._engine = engine
            self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
            try:
                self.run_migrations()
            except SchemaError:
                self._dispose()
                raise

            self._is_initialized = True
            logger.info('Database connected: %s', self._db_path)

    def run_migrations(self) -> None:
        if self._engine is None:
            raise SchemaError('Cannot run migrations without an open database')
        if not self._schema_path.exists():
            raise SchemaError(f'Schema file not found: {self._schema_path}')

        schema = self._schema_path.read_text(encoding='utf-8')
        raw_connection = self._engine.raw_connection()
        try:
            raw_connection.dbapi_connection.executescript(schema)
            raw_connection.commit()
        except sqlite3.Error as exc:
            logger.error('Schema migration failed: %s', exc)
            raise SchemaError(f'Failed to apply {self._schema_path.name}') from exc
        finally:
            raw_connection.close()
        logger.info('Database schema migration completed')

    def get_handle(self) -> Engine:
        with self._lock:
            if not self._is_initialized or self._engine is None:
                logger.warning('Database not initialized, attempting to reinitialize')
                self._initialize()
            return self._engine

    def session(self) -> Session:
        with self._lock:
            self.get_handle()
            factory = self._session_factory
        return factory()

    def _ping(self) -> bool:
        if not self._is_initialized or self._engine is None:
            raise InitializationError('Database not initialized')
        if not self._db_path.exists():
            raise InitializationError(f'Database file missing: {self._db_path}')
        with self._engine.connect() as connection:
            return connection.execute(text('SELECT 1')).scalar() == 1

    def health_check(self) -> bool:
        try:
            return self._ping()
        except RETRYABLE_ERRORS as exc:
            logger.warning('Database health check failed: %s', exc)

        # A single reopen of the existing file; a vanished store is reported, not recreated.
        try:
            self._initialize(create=False)
            return self._ping()
        except RETRYABLE_ERRORS as exc:
            logger.error('Database reinitialization during health check failed: %s', exc)
            return False

    def execute_with_retry(self, operation: Callable[[], T], max_retries: int | None = None) -> T:
        attempts = config.DB_MAX_RETRIES if max_retries is None else max_retries
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                if not self._is_initialized:
                    self._initialize()
                return operation()
            except RETRYABLE_ERRORS as exc:
                last_error = exc
                logger.warning('Database operation failed (attempt %s/%s): %s', attempt, attempts, exc)
                if attempt < attempts:
                    self._sleep(backoff_delay(attempt))
                    try:
                        self._initialize()
                    except DatabaseError as init_error:
                        logger.error('Failed to reinitialize database: %s', init_error)

        raise QueryError(f'Database operation failed after {attempts} attempts') from last_error

    def backup(self, destination: str | Path) -> Path:
        destination = Path(destination)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            raw_connection = self.get_handle().raw_connection()
            try:
                target = sqlite3.connect(destination)
                try:
                    raw_connection.dbapi_connection.backup(target)
                finally:
                    target.close()
            finally:
                raw_connection.close()
        except (OSError, sqlite3.Error, SQLAlchemyError, DatabaseError) as exc:
            logger.error('Database backup to %s failed: %s', destination, exc)
            raise BackupError(f'Backup to {destination} failed') from exc

        logger.info('Database backed up to %s', destination)
        return destination

    def switch_path(self, new_path: str | Path) -> Path:
        resolved = self._resolve(new_path)
        logger.info('Attempting to switch database path to %s', resolved)

        with self._lock:
            if resolved == self._db_path and self._is_initialized:
                logger.info('Requested database path is already active')
                return resolved

            previous = self._db_path
            self.close()
            self._db_path = resolved
            try:
                self._initialize()
            except DatabaseError:
                logger.error('Switch to %s failed, restoring %s', resolved, previous)
                self._db_path = previous
                self._initialize()
                raise

        logger.info('Switched database to %s', resolved)
        return resolved

    def file_stats(self) -> dict:
        try:
            stats = self._db_path.stat()
        except OSError as exc:
            logger.warning('Could not stat database file %s: %s', self._db_path, exc)
            return {'size': 0, 'last_modified': None}
        return {'size': stats.st_size, 'last_modified': datetime.fromtimestamp(stats.st_mtime)}

    def _dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._is_initialized = False

    def close(self) -> None:
        with self._lock:
            was_open = self._engine is not None
            self._dispose()
        if was_open:
            logger.info('Database connection closed')
