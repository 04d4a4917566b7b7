"""
Recurring rules and the recurrence engine.

A recurring rule is a template (type, category, source, amount, schedule)
from which dated income/expense records are generated. Each rule carries a
cursor, last_generated_at, that only moves forward; a run generates every
occurrence after the cursor up to today (local to the rule's offset) and
moves the cursor to the last one.

Key responsibilities:
- Validate rule definitions and run CRUD through recurring_database_manager
- Compute occurrence dates (compute_occurrences, pure)
- Materialize occurrences idempotently (run_for_rule, run_recurrence_once)
- Run all rules periodically in a background thread (RecurrenceScheduler)
"""

import logging
import threading
from datetime import date, datetime
from typing import Optional
from date_math import (
    add_weeks,
    add_months_clamped,
    add_years_clamped,
    clamp_day,
    local_date,
    local_midnight_utc,
)
from database_model import database
from errors import NotFoundError
from utils import generate_uid, empty_to_none, parse_amount, utc_now, validate_date_format
import recurring_database_manager as recdb

logger = logging.getLogger(__name__)

RULE_TYPES = ('income', 'expense')
REPEAT_OPTIONS = ('weekly', 'monthly', 'yearly')
DEFAULT_TZ_OFFSET_MINUTES = 420
MAX_TZ_OFFSET_MINUTES = 14 * 60
RECURRING_NOTE = '[Recurring]'

# Runs of the same rule are serialized in-process
_rule_locks = {}
_rule_locks_guard = threading.Lock()


def rule_to_dict(rule) -> Optional[dict]:
    if rule is None:
        return None
    return {
        'id': rule.id,
        'type': rule.type,
        'category': rule.category,
        'source': rule.source,
        'amount': rule.amount,
        'repeat': rule.repeat,
        'day_of_month': rule.day_of_month,
        'start_date': rule.start_date,
        'end_date': rule.end_date,
        'is_active': rule.is_active,
        'notes': rule.notes,
        'tz_offset_minutes': rule.tz_offset_minutes,
        'last_run_at': rule.last_run_at,
        'last_generated_at': rule.last_generated_at,
        'created_at': rule.created_at,
    }


# ==================== VALIDATION ====================

def _parse_local_day(value, offset_minutes: int) -> Optional[date]:
    """
    Local calendar day of a rule date input.

    'YYYY-MM-DD' strings and date objects are already local days. datetimes
    and ISO timestamps are UTC instants and are shifted into the offset.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return local_date(value, offset_minutes)
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if validate_date_format(text):
        return datetime.strptime(text, '%Y-%m-%d').date()

    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        raise ValueError(f"Invalid date: {value}")
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return local_date(parsed, offset_minutes)


def _validate_rule(data: dict, default_offset_minutes: int) -> dict:
    """
    Validate rule input and convert it to model fields.

    Raises:
        ValueError: On any invalid field
    """
    rule_type = str(data.get('type') or '').lower()
    if rule_type not in RULE_TYPES:
        raise ValueError("type must be income or expense")

    category = str(data.get('category') or '').strip()
    if not category:
        raise ValueError("category is required")

    amount = parse_amount(data.get('amount'))

    repeat = str(data.get('repeat') or 'monthly').lower()
    if repeat not in REPEAT_OPTIONS:
        raise ValueError("repeat must be weekly, monthly, or yearly")

    day_of_month = data.get('day_of_month')
    if day_of_month in (None, ''):
        day_of_month = None
    else:
        try:
            day_of_month = int(day_of_month)
        except (TypeError, ValueError):
            raise ValueError("day_of_month must be a number between 1 and 31")
        if not 1 <= day_of_month <= 31:
            raise ValueError("day_of_month must be a number between 1 and 31")

    offset = data.get('tz_offset_minutes')
    if offset in (None, ''):
        offset = default_offset_minutes
    try:
        offset = int(offset)
    except (TypeError, ValueError):
        raise ValueError("tz_offset_minutes must be a whole number of minutes")
    if abs(offset) > MAX_TZ_OFFSET_MINUTES:
        raise ValueError("tz_offset_minutes must be within +/- 14 hours")

    start_day = _parse_local_day(data.get('start_date'), offset)
    if start_day is None:
        raise ValueError("start_date is required")

    end_day = _parse_local_day(data.get('end_date'), offset)
    if end_day is not None and end_day < start_day:
        raise ValueError("end_date cannot be before start_date")

    return {
        'type': rule_type,
        'category': category,
        'source': empty_to_none(data.get('source')) or '',
        'amount': amount,
        'repeat': repeat,
        'day_of_month': day_of_month,
        'start_date': local_midnight_utc(start_day, offset),
        'end_date': local_midnight_utc(end_day, offset) if end_day else None,
        'is_active': data.get('is_active') is not False,
        'notes': empty_to_none(data.get('notes')) or '',
        'tz_offset_minutes': offset,
    }


def _rule_as_input(rule) -> dict:
    """Current rule values in the shape accepted by _validate_rule."""
    offset = rule.tz_offset_minutes
    return {
        'type': rule.type,
        'category': rule.category,
        'source': rule.source,
        'amount': rule.amount,
        'repeat': rule.repeat,
        'day_of_month': rule.day_of_month,
        'start_date': local_date(rule.start_date, offset),
        'end_date': local_date(rule.end_date, offset) if rule.end_date else None,
        'is_active': rule.is_active,
        'notes': rule.notes,
        'tz_offset_minutes': offset,
    }


# ==================== RULE CRUD LOGIC ====================

def create_rule(user_id: str, data: dict,
                default_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES) -> dict:
    """
    Create recurring rule, then run the user's rules so occurrences up to
    today exist immediately.
    """
    try:
        fields = _validate_rule(data, default_offset_minutes)

        now = utc_now()
        rule_data = {
            'id': generate_uid(),
            'user_id': user_id,
            'created_at': now,
            'updated_at': now,
            **fields,
        }

        rule = recdb.create_rule(rule_data)
        logger.info(f"Business logic: Created {rule.repeat} {rule.type} rule {rule.id} for user {user_id}")

        run_recurrence_once(only_user_id=user_id, default_offset_minutes=default_offset_minutes)
        return rule_to_dict(recdb.get_rule_by_id(rule.id, user_id))
    except Exception as e:
        logger.error(f"Failed to create recurring rule: {e}")
        raise


def get_rules(user_id: str) -> list:
    """Get all rules for user, newest first."""
    try:
        return [rule_to_dict(rule) for rule in recdb.get_rules(user_id)]
    except Exception as e:
        logger.error(f"Failed to get recurring rules: {e}")
        raise


def update_rule(user_id: str, rule_id: str, data: dict,
                default_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES) -> dict:
    """
    Update rule fields. Fields missing from data keep their current value.

    The cursor is kept: occurrences already generated are not regenerated
    under the new schedule.
    When the offset changes, the cursor moves to the same local day under
    the new offset, like start_date and end_date.
    """
    try:
        rule = recdb.get_rule_by_id(rule_id, user_id)
        if not rule:
            raise NotFoundError("Rule not found")

        merged = _rule_as_input(rule)
        merged.update({key: value for key, value in data.items() if key in merged})
        fields = _validate_rule(merged, default_offset_minutes)
        old_offset = rule.tz_offset_minutes
        if rule.last_generated_at and fields['tz_offset_minutes'] != old_offset:
            fields['last_generated_at'] = local_midnight_utc(
                local_date(rule.last_generated_at, old_offset), fields['tz_offset_minutes'])
        fields['updated_at'] = utc_now()

        recdb.update_rule(rule_id, fields)
        logger.info(f"Business logic: Updated recurring rule {rule_id}")

        run_recurrence_once(only_user_id=user_id, default_offset_minutes=default_offset_minutes)
        return rule_to_dict(recdb.get_rule_by_id(rule_id, user_id))
    except Exception as e:
        logger.error(f"Failed to update recurring rule: {e}")
        raise


def toggle_rule(user_id: str, rule_id: str, is_active: Optional[bool] = None,
                default_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES) -> dict:
    """Set is_active (flip it when is_active is None)."""
    try:
        rule = recdb.get_rule_by_id(rule_id, user_id)
        if not rule:
            raise NotFoundError("Rule not found")

        new_state = (not rule.is_active) if is_active is None else bool(is_active)
        recdb.update_rule(rule_id, {'is_active': new_state, 'updated_at': utc_now()})
        logger.info(f"Business logic: Recurring rule {rule_id} active={new_state}")

        run_recurrence_once(only_user_id=user_id, default_offset_minutes=default_offset_minutes)
        return rule_to_dict(recdb.get_rule_by_id(rule_id, user_id))
    except Exception as e:
        logger.error(f"Failed to toggle recurring rule: {e}")
        raise


def delete_rule(user_id: str, rule_id: str) -> None:
    """Delete rule. Records it already generated are kept."""
    try:
        rule = recdb.get_rule_by_id(rule_id, user_id)
        if not rule:
            raise NotFoundError("Rule not found")

        recdb.delete_rule(rule_id)
        logger.info(f"Business logic: Deleted recurring rule {rule_id}")
    except Exception as e:
        logger.error(f"Failed to delete recurring rule: {e}")
        raise


# ==================== RECURRENCE ENGINE ====================

def _rule_offset(rule, default_offset_minutes: int) -> int:
    if rule.tz_offset_minutes is None:
        return default_offset_minutes
    return rule.tz_offset_minutes


def next_occurrence(rule, day: date, offset_minutes: int) -> date:
    """
    The occurrence one period after day.

    weekly  -> +7 days
    monthly -> next month on day_of_month (start day when unset), clamped
    yearly  -> next year on the start month/day, Feb 29 -> Feb 28 when needed
    """
    start = local_date(rule.start_date, offset_minutes)
    repeat = (rule.repeat or 'monthly').lower()

    if repeat == 'weekly':
        return add_weeks(day, 1)
    if repeat == 'yearly':
        return add_years_clamped(day, 1, anchor_month=start.month, anchor_day=start.day)
    return add_months_clamped(day, 1, anchor_day=rule.day_of_month or start.day)


def first_occurrence(rule, offset_minutes: int) -> date:
    """
    First occurrence not yet generated.

    One period after the cursor if the rule has run before; otherwise the
    local start date (monthly rules snap to day_of_month within the start
    month).
    """
    if rule.last_generated_at:
        return next_occurrence(rule, local_date(rule.last_generated_at, offset_minutes),
                               offset_minutes)

    start = local_date(rule.start_date, offset_minutes)
    if (rule.repeat or 'monthly').lower() == 'monthly' and rule.day_of_month:
        return date(start.year, start.month,
                    clamp_day(start.year, start.month, rule.day_of_month))
    return start


def compute_occurrences(rule, now: datetime,
                        default_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES) -> list:
    """
    Local dates a run at `now` would generate for rule, oldest first.

    Pure: reads only the rule's fields. Returns [] for inactive rules or
    when the next occurrence lies after today / the end date.
    """
    if not rule.is_active:
        return []

    offset = _rule_offset(rule, default_offset_minutes)
    last = local_date(now, offset)
    if rule.end_date:
        last = min(last, local_date(rule.end_date, offset))

    occurrences = []
    cursor = first_occurrence(rule, offset)
    while cursor <= last:
        occurrences.append(cursor)
        cursor = next_occurrence(rule, cursor, offset)
    return occurrences


def _occurrence_entry(rule, day: date, offset_minutes: int, now: datetime) -> dict:
    """Income/expense record data for one occurrence."""
    notes = f"{rule.notes} {RECURRING_NOTE}" if rule.notes else RECURRING_NOTE
    return {
        'id': generate_uid(),
        'user_id': rule.user_id,
        'category': rule.category,
        'source': rule.source or '',
        'amount': rule.amount,
        'date': local_midnight_utc(day, offset_minutes),
        'notes': notes,
        'recurring_rule_id': rule.id,
        'created_at': now,
        'updated_at': now,
    }


def _lock_for(rule_id: str) -> threading.Lock:
    with _rule_locks_guard:
        return _rule_locks.setdefault(rule_id, threading.Lock())


def run_for_rule(rule, now: Optional[datetime] = None,
                 default_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES) -> int:
    """
    Generate all due occurrences of one rule.

    The rule is re-read under its lock so concurrent runs see each other's
    cursor. Records and the cursor are written in one transaction; when
    nothing is due the rule is left untouched.

    Returns:
        Number of records created
    """
    now = now or utc_now()

    with _lock_for(rule.id):
        current = recdb.get_rule_by_id(rule.id, rule.user_id)
        if current is None or not current.is_active:
            return 0

        occurrences = compute_occurrences(current, now, default_offset_minutes)
        if not occurrences:
            logger.debug(f"Rule {current.id}: nothing due")
            return 0

        offset = _rule_offset(current, default_offset_minutes)
        entries = [_occurrence_entry(current, day, offset, now) for day in occurrences]

        return recdb.materialize_occurrences(
            current.id, current.type, entries,
            last_generated_at=entries[-1]['date'],
            last_run_at=now
        )


def run_recurrence_once(only_user_id: Optional[str] = None, now: Optional[datetime] = None,
                        default_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES) -> dict:
    """
    Run every active rule (optionally only one user's).

    A failing rule is logged and skipped; the remaining rules still run.

    Returns:
        {'rules': rules processed, 'created': records created, 'failed': rules failed}
    """
    now = now or utc_now()
    rules = recdb.get_active_rules(only_user_id)

    created = 0
    failed = 0
    for rule in rules:
        try:
            created += run_for_rule(rule, now, default_offset_minutes)
        except Exception as e:
            failed += 1
            logger.error(f"Recurrence failed for rule {rule.id}: {e}")

    logger.info(f"Recurrence run: {len(rules)} rule(s), {created} record(s) created, {failed} failed")
    return {'rules': len(rules), 'created': created, 'failed': failed}


class RecurrenceScheduler:
    """
    Runs run_recurrence_once() at start and then every interval_seconds in
    a daemon thread. Each tick uses its own database connection.
    """

    def __init__(self, interval_seconds: int = 3600,
                 default_tz_offset_minutes: int = DEFAULT_TZ_OFFSET_MINUTES):
        self.interval_seconds = interval_seconds
        self.default_tz_offset_minutes = default_tz_offset_minutes
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name='recurrence-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"Recurrence scheduler started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Recurrence scheduler stopped")

    def tick(self) -> dict:
        with database.connection_context():
            return run_recurrence_once(default_offset_minutes=self.default_tz_offset_minutes)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Recurrence scheduler tick failed: {e}")
            if self._stop_event.wait(self.interval_seconds):
                break
