"""
Goal database CRUD operations.

Pure CRUD functions - no validation or business logic.
All validation happens in goal_business_logic.py. current_amount and the
achieved/active status flip are written only by
jar_database_manager.apply_transfer.
"""

import logging
from peewee import DoesNotExist
from database_model import Goal
import database_manager as db

logger = logging.getLogger(__name__)


@db.with_transaction
def create_goal(data: dict) -> Goal:
    """Create goal with provided data dict."""
    goal = Goal(**data)
    goal.save(force_insert=True)
    logger.info(f"Created goal: {goal.title} ({goal.id})")
    return goal


@db.with_retry
def get_goal_by_id(goal_id: str, user_id: str) -> Goal:
    """Get goal owned by user. Returns None if not found."""
    try:
        return Goal.get((Goal.id == goal_id) & (Goal.user_id == user_id))
    except DoesNotExist:
        return None


@db.with_retry
def get_goals(user_id: str) -> list:
    """Get all goals for user, newest first."""
    return list(Goal.select()
                .where(Goal.user_id == user_id)
                .order_by(Goal.created_at.desc()))


@db.with_retry
def get_auto_allocate_goals(user_id: str) -> list:
    """
    Get active goals with auto-allocation enabled, earliest deadline first.

    Ties on target_date are broken by creation time, then id.
    """
    return list(Goal.select()
                .where((Goal.user_id == user_id) &
                       (Goal.status == 'active') &
                       (Goal.auto_allocate_enabled == True))  # noqa: E712
                .order_by(Goal.target_date, Goal.created_at, Goal.id))


@db.with_retry
def goal_exists_by_title(user_id: str, title: str) -> bool:
    """Check if user already has a goal with this title (case-insensitive)."""
    return Goal.select().where(
        (Goal.user_id == user_id) & (Goal.title.ilike(title))
    ).exists()


@db.with_transaction
def update_goal(goal_id: str, data: dict) -> Goal:
    """Update goal fields."""
    goal = Goal.get(Goal.id == goal_id)
    for key, value in data.items():
        setattr(goal, key, value)
    goal.save()
    logger.info(f"Updated goal: {goal.title} ({goal.id})")
    return goal


@db.with_transaction
def delete_goal(goal_id: str) -> None:
    """Delete goal by ID."""
    goal = Goal.get(Goal.id == goal_id)
    goal_title = goal.title
    goal.delete_instance()
    logger.info(f"Deleted goal: {goal_title} ({goal_id})")
