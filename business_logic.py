"""
Business logic for Jarbook application.

Configuration loading, database initialization, and the income/expense
rules. Jar, goal and recurring-rule logic live in their own modules
(jar_business_logic.py, goal_business_logic.py, recurring_business_logic.py)
and follow the same conventions:
- Validate inputs, prepare complete data dicts (ids, timestamps, NULLs)
- Call the matching *database_manager module for pure CRUD
- Log failures and re-raise for the route layer

DO NOT call database methods directly - always use the database manager modules.
"""

import logging
import os
import json
from typing import Optional
from dotenv import load_dotenv
from date_math import to_utc_date_only
from errors import NotFoundError
from utils import generate_uid, empty_to_none, parse_amount, utc_now
import database_manager as db
import goal_business_logic as goalbl

logger = logging.getLogger(__name__)

# Picks up JARBOOK_CONFIG from a .env file if present
load_dotenv()

# Database configuration state
DATABASE_CONFIGURED = False

# Try multiple paths for the config file (Docker vs local development)
CONFIG_PATHS = [
    "/app/data/jarbook_config.json",  # Docker container path
    "./jarbook_config.json",          # Local development (project root)
    "./data/jarbook_config.json"      # Local development (data subdirectory)
]

ENTRY_TYPES = ('income', 'expense')


# ==================== CONFIGURATION ====================

class AppSettings:
    """
    Application settings read from jarbook_config.json.

    Passed explicitly to the engines that need them (currency for goal
    messages, default offset and interval for the recurrence engine).
    """

    DEFAULTS = {
        'db_engine': 'mysql',
        'db_path': './jarbook.db',
        'db_host': 'localhost',
        'db_port': 3306,
        'db_name': 'jarbook',
        'db_user': 'jarbook_user',
        'db_password': 'jarbook_pass',
        'db_pool_size': 10,
        'currency': 'THB',
        'default_tz_offset_minutes': 420,
        'recurrence_enabled': True,
        'recurrence_interval_seconds': 3600,
    }

    def __init__(self, **overrides):
        values = dict(self.DEFAULTS)
        values.update({k: v for k, v in overrides.items() if k in self.DEFAULTS and v is not None})

        self.db_engine = str(values['db_engine']).lower()
        if self.db_engine not in ('mysql', 'sqlite'):
            raise ValueError(f"Unsupported db_engine: {self.db_engine}")

        self.db_path = values['db_path']
        self.db_host = values['db_host']
        self.db_port = int(values['db_port'])
        self.db_name = values['db_name']
        self.db_user = values['db_user']
        self.db_password = values['db_password']
        self.db_pool_size = int(values['db_pool_size'])
        self.currency = values['currency']
        self.default_tz_offset_minutes = int(values['default_tz_offset_minutes'])
        self.recurrence_enabled = bool(values['recurrence_enabled'])
        self.recurrence_interval_seconds = int(values['recurrence_interval_seconds'])

    @classmethod
    def from_dict(cls, config: dict) -> 'AppSettings':
        return cls(**(config or {}))


# Active settings; replaced by initialize_database()
SETTINGS = AppSettings()


def _get_config_file_path() -> str:
    """
    Get the path to the configuration file.

    Tries in order:
    1. $JARBOOK_CONFIG (environment or .env)
    2. /app/data/jarbook_config.json (Docker container)
    3. ./jarbook_config.json (local dev - project root)
    4. ./data/jarbook_config.json (local dev - data subdirectory)

    Returns:
        str: Path to the config file, or None if none exists
    """
    env_path = os.getenv("JARBOOK_CONFIG")
    if env_path:
        return env_path

    for path in CONFIG_PATHS:
        if os.path.exists(path):
            return path
    return None


def load_config() -> Optional[dict]:
    """
    Load configuration from jarbook_config.json.

    Returns:
        dict with the keys of AppSettings.DEFAULTS (any subset)
        None if the file doesn't exist or can't be read
    """
    config_file = _get_config_file_path()

    if not config_file or not os.path.exists(config_file):
        return None

    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
            logger.info(f"Configuration loaded from {config_file}")
            return config
    except Exception as e:
        logger.error(f"Failed to read {config_file}: {e}")
        return None


def initialize_database(config: Optional[dict] = None) -> AppSettings:
    """
    Initialize database connection and create tables if needed.

    Args:
        config: Settings dict; loaded from jarbook_config.json when omitted

    Returns:
        The active AppSettings. DATABASE_CONFIGURED tells whether the
        database is usable.
    """
    global DATABASE_CONFIGURED, SETTINGS

    try:
        if config is None:
            config = load_config()

        if config is None:
            logger.warning("Database not configured - jarbook_config.json not found")
            DATABASE_CONFIGURED = False
            return SETTINGS

        SETTINGS = AppSettings.from_dict(config)

        if SETTINGS.db_engine == 'sqlite':
            logger.info(f"Opening SQLite database: {SETTINGS.db_path}")
            db.initialize_sqlite(SETTINGS.db_path)
        else:
            logger.info(f"Connecting to database: {SETTINGS.db_host}:{SETTINGS.db_port}/{SETTINGS.db_name}")
            db.initialize_connection(
                host=SETTINGS.db_host,
                port=SETTINGS.db_port,
                database_name=SETTINGS.db_name,
                user=SETTINGS.db_user,
                password=SETTINGS.db_password,
                pool_size=SETTINGS.db_pool_size
            )

        db.create_tables_if_not_exist()
        logger.info("Database initialized successfully")
        DATABASE_CONFIGURED = True
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        DATABASE_CONFIGURED = False
        # Don't raise - allow app to start so the configuration can be fixed

    return SETTINGS


# ==================== INCOME / EXPENSE BUSINESS LOGIC ====================

def entry_to_dict(entry) -> Optional[dict]:
    if entry is None:
        return None
    return {
        'id': entry.id,
        'source': entry.source,
        'category': entry.category,
        'amount': entry.amount,
        'date': entry.date,
        'notes': entry.notes,
        'recurring_rule_id': entry.recurring_rule_id,
        'created_at': entry.created_at,
    }


def _check_entry_type(entry_type: str) -> None:
    if entry_type not in ENTRY_TYPES:
        raise ValueError("entry_type must be income or expense")


def _create_entry(entry_type: str, user_id: str, amount, date=None,
                  category: Optional[str] = None, source: Optional[str] = None,
                  notes: Optional[str] = None):
    """
    Validate and store one income/expense record.

    Business logic:
    - amount > 0
    - date as YYYY-MM-DD (stored as that day's UTC midnight), defaults to today
    - empty category -> 'Uncategorized'
    """
    _check_entry_type(entry_type)
    amount = parse_amount(amount)
    entry_date = to_utc_date_only(empty_to_none(date) or utc_now())

    now = utc_now()
    entry_data = {
        'id': generate_uid(),
        'user_id': user_id,
        'source': (empty_to_none(source) or '').strip(),
        'category': (empty_to_none(category) or 'Uncategorized').strip(),
        'amount': amount,
        'date': entry_date,
        'notes': empty_to_none(notes) or '',
        'recurring_rule_id': None,
        'created_at': now,
        'updated_at': now
    }

    entry = db.create_entry(entry_type, entry_data)
    logger.info(f"Business logic: Created {entry_type} {entry.id} for user {user_id}")
    return entry


def create_income(user_id: str, amount, date=None, category: Optional[str] = None,
                  source: Optional[str] = None, notes: Optional[str] = None) -> dict:
    """
    Create income record, then run the goal auto-allocator on its amount.

    The allocator runs after the income is committed. An allocation failure
    is logged and never fails the income.

    Returns:
        {'income': ..., 'allocations': [...]}
    """
    try:
        income = _create_entry('income', user_id, amount, date, category, source, notes)
    except Exception as e:
        logger.error(f"Failed to create income: {e}")
        raise

    allocations = []
    try:
        allocations = goalbl.auto_allocate(user_id, income.amount)
    except Exception as e:
        logger.error(f"Auto-allocation after income {income.id} failed: {e}")

    return {'income': entry_to_dict(income), 'allocations': allocations}


def create_expense(user_id: str, amount, date=None, category: Optional[str] = None,
                   source: Optional[str] = None, notes: Optional[str] = None) -> dict:
    """Create expense record."""
    try:
        expense = _create_entry('expense', user_id, amount, date, category, source, notes)
        return entry_to_dict(expense)
    except Exception as e:
        logger.error(f"Failed to create expense: {e}")
        raise


def get_entries(entry_type: str, user_id: str, start_date: Optional[str] = None,
                end_date: Optional[str] = None) -> list:
    """
    Get income or expense records for user, newest first.

    start_date / end_date (YYYY-MM-DD, inclusive) narrow the range.
    """
    try:
        _check_entry_type(entry_type)
        start = to_utc_date_only(empty_to_none(start_date))
        end = to_utc_date_only(empty_to_none(end_date))
        if start and end and end < start:
            raise ValueError("end_date cannot be before start_date")

        if end:
            end = end.replace(hour=23, minute=59, second=59)

        entries = db.get_entries(entry_type, user_id, start=start, end=end)
        return [entry_to_dict(entry) for entry in entries]
    except Exception as e:
        logger.error(f"Failed to get {entry_type} records: {e}")
        raise


def delete_entry(entry_type: str, user_id: str, entry_id: str) -> None:
    """
    Delete income or expense record.

    Deleting income does not undo transfers made by the auto-allocator.
    """
    try:
        _check_entry_type(entry_type)
        entry = db.get_entry_by_id(entry_type, entry_id, user_id)
        if not entry:
            raise NotFoundError(f"{entry_type.capitalize()} not found")

        db.delete_entry(entry_type, entry_id)
        logger.info(f"Business logic: Deleted {entry_type} {entry_id}")
    except Exception as e:
        logger.error(f"Failed to delete {entry_type}: {e}")
        raise
