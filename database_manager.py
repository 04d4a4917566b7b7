"""
Database manager for Jarbook application.

Connection handling, transaction/retry decorators and the income/expense
CRUD used by the rest of the application. Feature-specific CRUD lives in
jar_database_manager.py, goal_database_manager.py and
recurring_database_manager.py and reuses the decorators defined here.

This module contains PURE CRUD functions - no validation, no logic.
All data preparation and validation happens in the business logic modules.
"""

import logging
import time
from datetime import datetime
from peewee import SqliteDatabase, DoesNotExist, OperationalError
from playhouse.pool import PooledMySQLDatabase
from database_model import (
    database,
    ALL_MODELS,
    Income,
    Expense,
)
from errors import LedgerError

logger = logging.getLogger(__name__)

# Connection retry configuration
MAX_RETRIES = 3
RETRY_DELAY = 1  # seconds


# ==================== INITIALIZATION ====================

def initialize_connection(host: str = "localhost", port: int = 3306,
                         database_name: str = "jarbook",
                         user: str = "jarbook_user",
                         password: str = "jarbook_pass",
                         pool_size: int = 10,
                         pool_recycle: int = 3600) -> None:
    """
    Initialize MySQL database connection with connection pooling.

    Args:
        host: Database host
        port: Database port
        database_name: Database name
        user: Database user
        password: Database password
        pool_size: Maximum number of connections in pool (default: 10)
        pool_recycle: Recycle connections after this many seconds (default: 3600)
    """
    try:
        database.initialize(PooledMySQLDatabase(
            database_name,
            host=host,
            port=port,
            user=user,
            password=password,
            charset='utf8mb4',
            max_connections=pool_size,
            stale_timeout=pool_recycle,
            timeout=10  # Connection timeout
        ))

        if database.is_closed():
            database.connect()

        logger.info(f"Database connection pool initialized: {host}:{port}/{database_name} "
                   f"(pool_size={pool_size}, recycle={pool_recycle}s)")
    except Exception as e:
        logger.error(f"Failed to initialize database connection: {e}")
        raise


def initialize_sqlite(path: str) -> None:
    """
    Initialize SQLite database (local development and tests).

    Transactions begin IMMEDIATE so a transfer holds the write lock from its
    first balance read until commit.

    Args:
        path: Database file path
    """
    try:
        database.initialize(SqliteDatabase(
            path,
            pragmas={'journal_mode': 'wal', 'busy_timeout': 5000},
            lock_type='IMMEDIATE'
        ))
        logger.info(f"SQLite database initialized: {path}")
    except Exception as e:
        logger.error(f"Failed to initialize SQLite database: {e}")
        raise


def check_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns True if connection is alive, False otherwise.
    """
    try:
        database.execute_sql('SELECT 1')
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


def reconnect() -> bool:
    """
    Attempt to reconnect to database.

    Returns True if reconnection successful, False otherwise.
    """
    try:
        if not database.is_closed():
            database.close()
        database.connect()
        logger.info("Database reconnection successful")
        return True
    except Exception as e:
        logger.error(f"Database reconnection failed: {e}")
        return False


def execute_with_retry(operation, *args, **kwargs):
    """
    Execute database operation with retry logic for transient failures.

    Ledger rule violations (LedgerError) are raised immediately without
    logging - they are expected outcomes, not database problems.

    Args:
        operation: Function to execute
        *args, **kwargs: Arguments to pass to operation

    Returns:
        Result of operation

    Raises:
        Exception: If all retries exhausted
    """
    last_exception = None

    for attempt in range(MAX_RETRIES):
        try:
            # Check connection health before operation
            if attempt > 0 and not check_connection():
                logger.info("Connection unhealthy, attempting reconnect...")
                reconnect()

            return operation(*args, **kwargs)

        except OperationalError as e:
            last_exception = e
            logger.warning(f"Database operation failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}")

            if attempt < MAX_RETRIES - 1:
                time.sleep(RETRY_DELAY)
                reconnect()
            else:
                logger.error(f"Database operation failed after {MAX_RETRIES} attempts")
                raise last_exception

        except LedgerError:
            raise

        except Exception as e:
            # Non-retryable error, raise immediately
            logger.error(f"Non-retryable database error: {e}")
            raise

    raise last_exception


def create_tables_if_not_exist() -> None:
    """
    Create all tables if they don't exist.

    Note: PeeWee's safe=True checks if tables exist, but may still try to
    add indexes. We catch duplicate key errors which can happen if tables
    already exist with indexes from a previous run.
    """
    try:
        database.create_tables(ALL_MODELS, safe=True)
        logger.info("Database tables created/verified")
    except OperationalError as e:
        if "Duplicate key name" in str(e) or "Duplicate entry" in str(e):
            logger.info("Database tables already exist with indexes - skipping creation")
        else:
            logger.error(f"Failed to create tables: {e}")
            raise
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        raise


def close_connection() -> None:
    """Close database connection."""
    if not database.is_closed():
        database.close()
        logger.info("Database connection closed")


def supports_row_locks() -> bool:
    """True if the active database understands SELECT ... FOR UPDATE."""
    return bool(database.for_update)


def _execute_transaction(func, *args, **kwargs):
    """
    Inner function to execute database operation in transaction.

    This is separated out so it can be wrapped by execute_with_retry.
    """
    with database.atomic():
        return func(*args, **kwargs)


def with_transaction(func):
    """
    Decorator to wrap database write operations in transactions with retry logic.

    Ensures atomicity - either all changes succeed or all are rolled back.
    Automatically retries on transient connection failures (OperationalError).
    """
    def wrapper(*args, **kwargs):
        try:
            return execute_with_retry(_execute_transaction, func, *args, **kwargs)
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__} after all retries: {e}")
            raise
    wrapper.__name__ = func.__name__
    wrapper.__doc__ = func.__doc__
    return wrapper


def with_retry(func):
    """
    Decorator to wrap database read operations with retry logic.

    Automatically retries on transient connection failures (OperationalError).
    Used for SELECT queries to ensure connection resilience.
    """
    def wrapper(*args, **kwargs):
        try:
            return execute_with_retry(func, *args, **kwargs)
        except Exception as e:
            logger.error(f"Failed to {func.__name__} after all retries: {e}")
            raise
    wrapper.__name__ = func.__name__
    wrapper.__doc__ = func.__doc__
    return wrapper


# ==================== INCOME / EXPENSE CRUD ====================

def entry_model(entry_type: str):
    """Income for 'income', Expense for 'expense'."""
    return Income if entry_type == 'income' else Expense


@with_transaction
def create_entry(entry_type: str, data: dict):
    """Create income or expense record with provided data dict."""
    entry = entry_model(entry_type)(**data)
    entry.save(force_insert=True)
    logger.info(f"Created {entry_type}: {entry.amount} ({entry.id})")
    return entry


@with_retry
def get_entry_by_id(entry_type: str, entry_id: str, user_id: str):
    """Get income or expense record owned by user. Returns None if not found."""
    model = entry_model(entry_type)
    try:
        return model.get((model.id == entry_id) & (model.user_id == user_id))
    except DoesNotExist:
        return None


@with_retry
def get_entries(entry_type: str, user_id: str, start: datetime = None,
                end: datetime = None) -> list:
    """Get income or expense records for user, newest first, optional [start, end] range."""
    model = entry_model(entry_type)
    query = model.select().where(model.user_id == user_id)
    if start is not None:
        query = query.where(model.date >= start)
    if end is not None:
        query = query.where(model.date <= end)
    return list(query.order_by(model.date.desc(), model.created_at.desc()))


@with_transaction
def delete_entry(entry_type: str, entry_id: str) -> None:
    """Delete income or expense record by ID."""
    model = entry_model(entry_type)
    entry = model.get(model.id == entry_id)
    entry.delete_instance()
    logger.info(f"Deleted {entry_type}: {entry_id}")


def find_entry(entry_type: str, user_id: str, category: str, source: str,
               amount, date: datetime, recurring_rule_id: str = None):
    """
    Find a record matching a generated occurrence.

    Matches on the (recurring_rule_id, date) key first, then on the
    user/category/source/amount/date fields. Meant to be called inside an
    open transaction, so it is not wrapped with retry.
    """
    model = entry_model(entry_type)
    if recurring_rule_id:
        by_key = model.get_or_none(
            (model.recurring_rule_id == recurring_rule_id) & (model.date == date)
        )
        if by_key:
            return by_key
    return model.get_or_none(
        (model.user_id == user_id) &
        (model.category == category) &
        (model.source == source) &
        (model.amount == amount) &
        (model.date == date)
    )
