"""
Jar database operations.

Jar CRUD plus the single write path for jar balances and goal progress
(apply_transfer). Validation of inputs happens in jar_business_logic.py;
the checks that must see committed state (ownership, balance, goal
existence) run here inside the transaction.

Follows same patterns as database_manager.py:
- Uses @with_transaction for write operations
- Uses @with_retry for read operations
- Raises exceptions on errors (handled by business logic layer)
"""

import logging
from peewee import DoesNotExist
from database_model import Jar, JarTransfer, Goal
from errors import NotFoundError, InsufficientFundsError
from utils import generate_uid, utc_now
import database_manager as db

logger = logging.getLogger(__name__)

TRANSFER_HISTORY_LIMIT = 200


# ==================== JAR CRUD ====================

@db.with_transaction
def create_jar(data: dict) -> Jar:
    """Create jar with provided data dict."""
    jar = Jar(**data)
    jar.save(force_insert=True)
    logger.info(f"Created jar: {jar.name} ({jar.id})")
    return jar


@db.with_retry
def get_jar_by_id(jar_id: str, user_id: str) -> Jar:
    """Get jar owned by user. Returns None if not found."""
    try:
        return Jar.get((Jar.id == jar_id) & (Jar.user_id == user_id))
    except DoesNotExist:
        return None


@db.with_retry
def get_jars(user_id: str) -> list:
    """Get all jars for user, primary jars first, then newest first."""
    return list(Jar.select()
                .where(Jar.user_id == user_id)
                .order_by(Jar.is_primary.desc(), Jar.created_at.desc()))


@db.with_retry
def jar_exists_by_name(user_id: str, name: str) -> bool:
    """Check if user already has a jar with this name (case-insensitive)."""
    return Jar.select().where(
        (Jar.user_id == user_id) & (Jar.name.ilike(name))
    ).exists()


@db.with_transaction
def delete_jar(jar_id: str) -> None:
    """Delete jar by ID."""
    jar = Jar.get(Jar.id == jar_id)
    jar_name = jar.name
    jar.delete_instance()
    logger.info(f"Deleted jar: {jar_name} ({jar_id})")


@db.with_retry
def get_transfers(user_id: str, limit: int = TRANSFER_HISTORY_LIMIT) -> list:
    """Get most recent transfers for user, newest first."""
    return list(JarTransfer.select()
                .where(JarTransfer.user_id == user_id)
                .order_by(JarTransfer.created_at.desc())
                .limit(limit))


@db.with_retry
def get_transfers_for_goal(goal_id: str) -> list:
    """Get all transfers tied to a goal, oldest first."""
    return list(JarTransfer.select()
                .where(JarTransfer.related_goal_id == goal_id)
                .order_by(JarTransfer.created_at))


# ==================== TRANSFER ====================

def _lock_jar(jar_id: str, user_id: str) -> Jar:
    """Read jar inside the open transaction, locking the row where supported."""
    query = Jar.select().where((Jar.id == jar_id) & (Jar.user_id == user_id))
    if db.supports_row_locks():
        query = query.for_update()
    return query.first()


def _lock_goal(goal_id: str, user_id: str) -> Goal:
    query = Goal.select().where((Goal.id == goal_id) & (Goal.user_id == user_id))
    if db.supports_row_locks():
        query = query.for_update()
    return query.first()


@db.with_transaction
def apply_transfer(user_id: str, from_jar_id, to_jar_id, amount, memo: str,
                   related_goal_id=None) -> dict:
    """
    Move amount between jars / free cash in one transaction.

    Steps (all rolled back together on any error):
    1. Re-read and check the source jar (ownership, balance >= amount)
    2. Re-read and check the destination jar (ownership)
    3. Re-read the related goal (ownership)
    4. Decrement source, increment destination
    5. Insert the JarTransfer row
    6. Adjust goal.current_amount (+amount toward a jar, -amount to free cash)
       and flip status between 'active' and 'achieved'

    Returns:
        dict with transfer, from_jar, to_jar, goal model instances (None where
        not applicable)

    Raises:
        NotFoundError: Jar or goal missing / owned by another user
        InsufficientFundsError: Source balance lower than amount
    """
    now = utc_now()

    from_jar = None
    if from_jar_id:
        from_jar = _lock_jar(from_jar_id, user_id)
        if from_jar is None:
            raise NotFoundError("Source jar not found")
        if (from_jar.balance or 0) < amount:
            raise InsufficientFundsError("Insufficient jar balance")

    to_jar = None
    if to_jar_id:
        to_jar = _lock_jar(to_jar_id, user_id)
        if to_jar is None:
            raise NotFoundError("Destination jar not found")

    goal = None
    if related_goal_id:
        goal = _lock_goal(related_goal_id, user_id)
        if goal is None:
            raise NotFoundError("Goal not found")

    if from_jar is not None:
        new_balance = from_jar.balance - amount
        updated = (Jar
                   .update(balance=new_balance, updated_at=now)
                   .where((Jar.id == from_jar.id) & (Jar.balance >= amount))
                   .execute())
        if updated != 1:
            raise InsufficientFundsError("Insufficient jar balance")
        from_jar.balance = new_balance
        from_jar.updated_at = now

    if to_jar is not None:
        if from_jar is not None and to_jar.id == from_jar.id:
            # Same jar on both sides: continue from the decremented balance
            to_jar = from_jar
        new_balance = to_jar.balance + amount
        Jar.update(balance=new_balance, updated_at=now).where(Jar.id == to_jar.id).execute()
        to_jar.balance = new_balance
        to_jar.updated_at = now

    transfer = JarTransfer(
        id=generate_uid(),
        user_id=user_id,
        from_jar_id=from_jar.id if from_jar else None,
        to_jar_id=to_jar.id if to_jar else None,
        amount=amount,
        memo=memo or '',
        related_goal_id=goal.id if goal else None,
        created_at=now,
    )
    transfer.save(force_insert=True)

    if goal is not None:
        delta = amount if to_jar is not None else -amount
        goal.current_amount = (goal.current_amount or 0) + delta
        reached = goal.current_amount >= goal.target_amount
        if reached and goal.status != 'achieved':
            goal.status = 'achieved'
            logger.info(f"Goal achieved: {goal.title} ({goal.id})")
        elif not reached and goal.status == 'achieved':
            goal.status = 'active'
            logger.info(f"Goal back to active: {goal.title} ({goal.id})")
        goal.updated_at = now
        goal.save()

    logger.info(f"Transfer {transfer.id}: {amount} "
                f"{from_jar.id if from_jar else 'free cash'} -> "
                f"{to_jar.id if to_jar else 'free cash'}"
                f"{f' (goal {goal.id})' if goal else ''}")

    return {
        'transfer': transfer,
        'from_jar': from_jar,
        'to_jar': to_jar,
        'goal': goal,
    }
