"""
Goal business logic and the auto-allocator.

Validation, business rules, and data preparation for savings goals.
Goal progress only ever changes through jar_business_logic.transfer(),
which keeps current_amount equal to the signed sum of the goal's transfers.

Key responsibilities:
- Validate goal definitions (title, target, deadline, jar, allocation policy)
- Fund / withdraw goals through the transfer engine
- Distribute incoming money over goals (auto_allocate)
"""

import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Optional
from date_math import to_utc_date_only
from errors import NotFoundError, InvalidAmountError
from utils import generate_uid, parse_amount, to_decimal, format_money, utc_now
import goal_database_manager as goaldb
import jar_database_manager as jardb
import jar_business_logic as jarbl
from jar_business_logic import goal_to_dict

logger = logging.getLogger(__name__)

GOAL_STATUSES = ('active', 'paused', 'achieved', 'expired')


def _parse_allocation_policy(policy: Optional[dict]) -> dict:
    """Normalize {'enabled', 'type', 'value'} into model fields."""
    policy = policy or {}
    allocation_type = 'fixed' if policy.get('type') == 'fixed' else 'percent'

    try:
        value = to_decimal(policy.get('value', 10) or 0)
    except ValueError:
        raise ValueError("Auto-allocate value must be a number")
    if value < 0:
        raise ValueError("Auto-allocate value cannot be negative")
    if allocation_type == 'percent' and value > 100:
        raise ValueError("Auto-allocate percent cannot exceed 100")

    return {
        'auto_allocate_enabled': bool(policy.get('enabled', False)),
        'auto_allocate_type': allocation_type,
        'auto_allocate_value': value,
    }


# ==================== GOAL CRUD LOGIC ====================

def create_goal(user_id: str, title: str, target_amount, target_date, jar_id: str,
                auto_allocate: Optional[dict] = None) -> dict:
    """
    Create new goal.

    Business logic:
    - title, target_amount, target_date, jar_id are required
    - Title unique per user (case-insensitive)
    - target_amount > 0
    - Jar must exist and belong to user
    - Starts with current_amount = 0 and status 'active'
    """
    try:
        if not title or not str(title).strip() or target_amount in (None, '') \
                or not target_date or not jar_id:
            raise ValueError("title, target_amount, target_date, jar_id are required")

        title = str(title).strip()

        try:
            target = parse_amount(target_amount)
        except InvalidAmountError:
            raise InvalidAmountError("Target amount must be > 0")

        deadline = to_utc_date_only(target_date)

        if goaldb.goal_exists_by_title(user_id, title):
            raise ValueError(f"Goal '{title}' already exists")

        jar = jardb.get_jar_by_id(jar_id, user_id)
        if not jar:
            raise NotFoundError("Jar not found")

        now = utc_now()
        goal_data = {
            'id': generate_uid(),
            'user_id': user_id,
            'title': title,
            'target_amount': target,
            'current_amount': Decimal('0'),
            'target_date': deadline,
            'jar_id': jar.id,
            'status': 'active',
            'created_at': now,
            'updated_at': now,
            **_parse_allocation_policy(auto_allocate),
        }

        goal = goaldb.create_goal(goal_data)
        logger.info(f"Business logic: Created goal {title} for user {user_id}")

        return goal_to_dict(goal)
    except Exception as e:
        logger.error(f"Failed to create goal: {e}")
        raise


def get_goals(user_id: str) -> list:
    """Get all goals for user, newest first."""
    try:
        return [goal_to_dict(goal) for goal in goaldb.get_goals(user_id)]
    except Exception as e:
        logger.error(f"Failed to get goals: {e}")
        raise


def update_goal_status(user_id: str, goal_id: str, status: str) -> dict:
    """
    Set goal status explicitly (pause, resume, expire).

    'achieved' is derived from progress and cannot be set by hand, and an
    achieved goal stays achieved until a withdrawal takes it below target.
    """
    try:
        goal = goaldb.get_goal_by_id(goal_id, user_id)
        if not goal:
            raise NotFoundError("Goal not found")

        if status not in GOAL_STATUSES or status == 'achieved':
            raise ValueError("status must be active, paused, or expired")

        if goal.status == 'achieved':
            raise ValueError("Goal is already achieved")

        updated = goaldb.update_goal(goal_id, {'status': status, 'updated_at': utc_now()})
        logger.info(f"Business logic: Goal {goal_id} status -> {status}")

        return goal_to_dict(updated)
    except Exception as e:
        logger.error(f"Failed to update goal status: {e}")
        raise


def delete_goal(user_id: str, goal_id: str) -> None:
    """Delete goal. Money stays in the goal's jar."""
    try:
        goal = goaldb.get_goal_by_id(goal_id, user_id)
        if not goal:
            raise NotFoundError("Goal not found")

        goaldb.delete_goal(goal_id)
        logger.info(f"Business logic: Deleted goal {goal_id}")
    except Exception as e:
        logger.error(f"Failed to delete goal: {e}")
        raise


# ==================== FUNDING ====================

def _load_goal_and_jar(user_id: str, goal_id: str):
    goal = goaldb.get_goal_by_id(goal_id, user_id)
    if not goal:
        raise NotFoundError("Goal not found")
    jar = jardb.get_jar_by_id(goal.jar_id, user_id)
    if not jar:
        raise NotFoundError("Linked jar not found")
    return goal, jar


def fund_goal(user_id: str, goal_id: str, amount, memo: Optional[str] = None,
              currency: str = 'THB') -> dict:
    """
    Free cash -> goal's jar, tied to the goal so progress updates.

    Returns:
        {'ok', 'message', 'goal', 'transfer'}
    """
    amount = parse_amount(amount)
    goal, jar = _load_goal_and_jar(user_id, goal_id)

    result = jarbl.transfer(
        user_id, None, jar.id, amount,
        memo=memo or f"Fund goal: {goal.title}",
        related_goal_id=goal.id
    )

    return {
        'ok': True,
        'message': f'Funded {format_money(amount, currency)} to "{goal.title}"',
        'goal': result['goal'],
        'transfer': result['transfer'],
    }


def withdraw_from_goal(user_id: str, goal_id: str, amount, memo: Optional[str] = None,
                       currency: str = 'THB') -> dict:
    """Goal's jar -> free cash, tied to the goal so progress goes down."""
    amount = parse_amount(amount)
    goal, jar = _load_goal_and_jar(user_id, goal_id)

    result = jarbl.transfer(
        user_id, jar.id, None, amount,
        memo=memo or f"Withdraw from goal: {goal.title}",
        related_goal_id=goal.id
    )

    return {
        'ok': True,
        'message': f'Withdrew {format_money(amount, currency)} from "{goal.title}"',
        'goal': result['goal'],
        'transfer': result['transfer'],
    }


# ==================== AUTO-ALLOCATOR ====================

def compute_allocation(goal, income_amount: Decimal) -> Decimal:
    """
    Amount a goal would receive from income_amount under its policy.

    percent -> floor(income * value / 100); fixed -> value as-is.
    Clamped to what the goal still needs; never negative.
    """
    remaining = max(Decimal('0'), goal.target_amount - goal.current_amount)
    if remaining <= 0:
        return Decimal('0')

    if goal.auto_allocate_type == 'percent':
        candidate = (income_amount * goal.auto_allocate_value / 100).to_integral_value(
            rounding=ROUND_FLOOR)
    else:
        candidate = goal.auto_allocate_value

    return max(Decimal('0'), min(candidate, remaining))


def auto_allocate(user_id: str, income_amount, memo: str = 'Auto-allocate on income') -> list:
    """
    Distribute incoming money over the user's goals.

    Business logic:
    - Only active goals with auto-allocation enabled
    - Earliest target_date first; each goal gets its full share before the next
    - Percent shares are computed from what is left of the income so far
    - Each allocation is a separate transfer free cash -> goal's jar
    - Stops once the income is used up

    Returns:
        List of {'goal_id', 'title', 'amount'} for goals that received money
    """
    running = parse_amount(income_amount)
    allocations = []

    try:
        for goal in goaldb.get_auto_allocate_goals(user_id):
            amount = compute_allocation(goal, running)
            if amount <= 0:
                logger.debug(f"Auto-allocate: skipping goal {goal.id} (nothing to allocate)")
                continue

            jarbl.transfer(user_id, None, goal.jar_id, amount,
                           memo=memo, related_goal_id=goal.id)
            allocations.append({'goal_id': goal.id, 'title': goal.title, 'amount': amount})

            running -= amount
            if running <= 0:
                break

        logger.info(f"Business logic: Auto-allocated to {len(allocations)} goal(s) for user {user_id}")
        return allocations
    except Exception as e:
        logger.error(f"Failed to auto-allocate for user {user_id}: {e}")
        raise
