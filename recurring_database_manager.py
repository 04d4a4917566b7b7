"""
Recurring rule database operations.

Rule CRUD plus materialize_occurrences(), which writes the generated
income/expense records of one recurrence run and advances the rule's
cursor in a single transaction.

Follows same patterns as database_manager.py:
- Uses @with_transaction for write operations
- Uses @with_retry for read operations
- Raises exceptions on errors (handled by business logic layer)
"""

import logging
from datetime import datetime
from peewee import DoesNotExist, IntegrityError
from database_model import RecurringRule, database
import database_manager as db

logger = logging.getLogger(__name__)


# ==================== RULE CRUD ====================

@db.with_transaction
def create_rule(data: dict) -> RecurringRule:
    """Create recurring rule with provided data dict."""
    rule = RecurringRule(**data)
    rule.save(force_insert=True)
    logger.info(f"Created recurring rule: {rule.type} {rule.category} ({rule.id})")
    return rule


@db.with_retry
def get_rule_by_id(rule_id: str, user_id: str) -> RecurringRule:
    """Get rule owned by user. Returns None if not found."""
    try:
        return RecurringRule.get((RecurringRule.id == rule_id) &
                                 (RecurringRule.user_id == user_id))
    except DoesNotExist:
        return None


@db.with_retry
def get_rules(user_id: str) -> list:
    """Get all rules for user, newest first."""
    return list(RecurringRule.select()
                .where(RecurringRule.user_id == user_id)
                .order_by(RecurringRule.created_at.desc()))


@db.with_retry
def get_active_rules(only_user_id: str = None) -> list:
    """Get active rules, optionally restricted to one user."""
    query = RecurringRule.select().where(RecurringRule.is_active == True)  # noqa: E712
    if only_user_id:
        query = query.where(RecurringRule.user_id == only_user_id)
    return list(query.order_by(RecurringRule.created_at))


@db.with_transaction
def update_rule(rule_id: str, data: dict) -> RecurringRule:
    """Update rule fields."""
    rule = RecurringRule.get(RecurringRule.id == rule_id)
    for key, value in data.items():
        setattr(rule, key, value)
    rule.save()
    logger.info(f"Updated recurring rule: {rule.id}")
    return rule


@db.with_transaction
def delete_rule(rule_id: str) -> None:
    """
    Delete rule by ID.

    Records generated by the rule are kept; their recurring_rule_id becomes
    a dangling reference.
    """
    rule = RecurringRule.get(RecurringRule.id == rule_id)
    rule.delete_instance()
    logger.info(f"Deleted recurring rule: {rule_id}")


# ==================== MATERIALIZATION ====================

@db.with_transaction
def materialize_occurrences(rule_id: str, entry_type: str, entries: list,
                            last_generated_at: datetime, last_run_at: datetime) -> int:
    """
    Insert generated records and advance the rule cursor.

    Each entry dict is skipped when an equivalent record already exists
    (see database_manager.find_entry) or when the (recurring_rule_id, date)
    unique index rejects it. The cursor never moves backwards.

    Args:
        rule_id: Rule being run
        entry_type: 'income' or 'expense'
        entries: Record data dicts, oldest first
        last_generated_at: UTC instant of the last occurrence in entries
        last_run_at: Time of this run

    Returns:
        Number of records created
    """
    model = db.entry_model(entry_type)
    created = 0

    for data in entries:
        existing = db.find_entry(entry_type, data['user_id'], data['category'],
                                 data['source'], data['amount'], data['date'],
                                 recurring_rule_id=data['recurring_rule_id'])
        if existing:
            logger.debug(f"Rule {rule_id}: {entry_type} on {data['date']} already exists, skipping")
            continue

        try:
            with database.atomic():
                model.create(**data)
            created += 1
        except IntegrityError:
            logger.debug(f"Rule {rule_id}: {entry_type} on {data['date']} inserted concurrently, skipping")

    rule = RecurringRule.get(RecurringRule.id == rule_id)
    if rule.last_generated_at is None or last_generated_at > rule.last_generated_at:
        rule.last_generated_at = last_generated_at
    rule.last_run_at = last_run_at
    rule.updated_at = last_run_at
    rule.save()

    logger.info(f"Rule {rule_id}: created {created} of {len(entries)} {entry_type} occurrence(s)")
    return created
