"""
Jar business logic and the transfer engine.

Validation, business rules, and data preparation for jars and transfers.
Follows same patterns as business_logic.py but in separate module.

Key responsibilities:
- Validate all inputs before passing to database
- Generate UUIDs and timestamps
- Route every balance change through transfer()
- Format data for API responses

Free cash is the implicit account outside all jars. It is represented by
None as from_jar_id / to_jar_id and has no balance of its own.
"""

import logging
from typing import Optional
from peewee import PeeweeException
from errors import LedgerError, NotFoundError, JarNotEmptyError, TransactionFailure
from utils import generate_uid, empty_to_none, parse_amount, utc_now
import jar_database_manager as jardb

logger = logging.getLogger(__name__)

DEFAULT_JAR_COLOR = '#6b7280'


# ==================== SERIALIZATION ====================

def jar_to_dict(jar) -> Optional[dict]:
    if jar is None:
        return None
    return {
        'id': jar.id,
        'name': jar.name,
        'color': jar.color,
        'is_primary': jar.is_primary,
        'balance': jar.balance,
        'created_at': jar.created_at,
    }


def transfer_to_dict(transfer) -> Optional[dict]:
    if transfer is None:
        return None
    return {
        'id': transfer.id,
        'from_jar_id': transfer.from_jar_id,
        'to_jar_id': transfer.to_jar_id,
        'amount': transfer.amount,
        'memo': transfer.memo,
        'related_goal_id': transfer.related_goal_id,
        'created_at': transfer.created_at,
    }


def goal_to_dict(goal) -> Optional[dict]:
    if goal is None:
        return None
    return {
        'id': goal.id,
        'title': goal.title,
        'target_amount': goal.target_amount,
        'current_amount': goal.current_amount,
        'target_date': goal.target_date,
        'jar_id': goal.jar_id,
        'auto_allocate': {
            'enabled': goal.auto_allocate_enabled,
            'type': goal.auto_allocate_type,
            'value': goal.auto_allocate_value,
        },
        'status': goal.status,
        'created_at': goal.created_at,
    }


# ==================== JAR LOGIC ====================

def create_jar(user_id: str, name: str, color: Optional[str] = None,
               is_primary: bool = False) -> dict:
    """
    Create new jar with zero balance.

    Business logic:
    - Validate name not empty
    - Check uniqueness per user (case-insensitive)
    - Generate UUID and timestamp
    """
    try:
        if not name or not str(name).strip():
            raise ValueError("Jar name is required")

        name = str(name).strip()

        if jardb.jar_exists_by_name(user_id, name):
            raise ValueError(f"Jar '{name}' already exists")

        now = utc_now()
        jar_data = {
            'id': generate_uid(),
            'user_id': user_id,
            'name': name,
            'color': empty_to_none(color) or DEFAULT_JAR_COLOR,
            'is_primary': bool(is_primary),
            'balance': 0,
            'created_at': now,
            'updated_at': now
        }

        jar = jardb.create_jar(jar_data)
        logger.info(f"Business logic: Created jar {name} for user {user_id}")

        return jar_to_dict(jar)
    except Exception as e:
        logger.error(f"Failed to create jar: {e}")
        raise


def get_jars(user_id: str) -> list:
    """Get all jars for user (primary first, newest first)."""
    try:
        return [jar_to_dict(jar) for jar in jardb.get_jars(user_id)]
    except Exception as e:
        logger.error(f"Failed to get jars: {e}")
        raise


def delete_jar(user_id: str, jar_id: str) -> None:
    """
    Delete jar.

    Business logic:
    - Validate jar exists and belongs to user
    - Only empty jars can be deleted (transfers stay as audit trail)
    """
    try:
        jar = jardb.get_jar_by_id(jar_id, user_id)
        if not jar:
            raise NotFoundError("Jar not found")

        if (jar.balance or 0) > 0:
            raise JarNotEmptyError("You can only delete an empty jar. Withdraw to 0 first.")

        jardb.delete_jar(jar_id)
        logger.info(f"Business logic: Deleted jar {jar_id}")
    except Exception as e:
        logger.error(f"Failed to delete jar: {e}")
        raise


def get_transfer_history(user_id: str) -> list:
    """Get the latest transfers for user, newest first."""
    try:
        return [transfer_to_dict(t) for t in jardb.get_transfers(user_id)]
    except Exception as e:
        logger.error(f"Failed to get transfer history: {e}")
        raise


# ==================== TRANSFER ENGINE ====================

def transfer(user_id: str, from_jar_id: Optional[str], to_jar_id: Optional[str],
             amount, memo: str = '', related_goal_id: Optional[str] = None) -> dict:
    """
    Move money between two endpoints (a jar or free cash) atomically.

    Business logic:
    - amount must be > 0
    - from/to jars must belong to user; source balance must cover amount
    - related goal (optional) must belong to user; its current_amount moves
      by +amount when money goes into a jar, -amount when it goes to free cash
    - All writes in one transaction: no partial state on any failure

    Returns:
        {'transfer': ..., 'from_jar': ..., 'to_jar': ..., 'goal': ...}

    Raises:
        InvalidAmountError, NotFoundError, InsufficientFundsError: rule violations
        TransactionFailure: database could not commit
    """
    amount = parse_amount(amount)
    from_jar_id = empty_to_none(from_jar_id)
    to_jar_id = empty_to_none(to_jar_id)
    related_goal_id = empty_to_none(related_goal_id)

    try:
        result = jardb.apply_transfer(
            user_id, from_jar_id, to_jar_id, amount,
            memo=empty_to_none(memo) or '',
            related_goal_id=related_goal_id
        )
    except LedgerError as e:
        logger.info(f"Transfer rejected for user {user_id}: {e}")
        raise
    except PeeweeException as e:
        logger.error(f"Transfer transaction failed for user {user_id}: {e}")
        raise TransactionFailure("Transfer could not be completed") from e

    return {
        'transfer': transfer_to_dict(result['transfer']),
        'from_jar': jar_to_dict(result['from_jar']),
        'to_jar': jar_to_dict(result['to_jar']),
        'goal': goal_to_dict(result['goal']),
    }


def fund_jar(user_id: str, jar_id: str, amount, memo: Optional[str] = None) -> dict:
    """Free cash -> jar."""
    return transfer(user_id, None, jar_id, amount, memo=empty_to_none(memo) or 'Fund jar')


def withdraw_jar(user_id: str, jar_id: str, amount, memo: Optional[str] = None) -> dict:
    """Jar -> free cash."""
    return transfer(user_id, jar_id, None, amount,
                    memo=empty_to_none(memo) or 'Withdraw from jar')


def transfer_between_jars(user_id: str, from_jar_id: str, to_jar_id: str, amount,
                          memo: Optional[str] = None) -> dict:
    """Jar -> jar. Both jar ids are required."""
    if not empty_to_none(from_jar_id) or not empty_to_none(to_jar_id):
        raise ValueError("from_jar_id and to_jar_id are required")
    return transfer(user_id, from_jar_id, to_jar_id, amount,
                    memo=empty_to_none(memo) or 'Jar transfer')
