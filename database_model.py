"""
Database models for Jarbook application.

All models use PeeWee ORM and follow these principles:
- IDs generated in the business logic modules via utils.generate_uid()
- All money amounts stored as DECIMAL(15, 2) and read back as Decimal
- All instants stored as naive UTC datetimes
- Every row is scoped to exactly one user (user_id); there is no user table,
  the user id comes from the authentication layer in front of the API
- Jar/goal references are plain id columns, not foreign keys, so the
  transfer audit trail survives jar and goal deletion
- NO LOGIC IN MODELS - pure data structures only
- Timestamps set explicitly by the business logic layer
"""

from peewee import (
    Model,
    DatabaseProxy,
    CharField,
    BooleanField,
    DecimalField,
    IntegerField,
    SmallIntegerField,
    DateTimeField,
    TextField,
)


# Database connection instance
# Initialized in database_manager.py with PooledMySQLDatabase (production)
# or SqliteDatabase (local development and tests)
database = DatabaseProxy()


def MoneyField(**kwargs):
    """DECIMAL(15, 2) with rounding on write."""
    return DecimalField(max_digits=15, decimal_places=2, auto_round=True, **kwargs)


class BaseModel(Model):
    """
    Base model with common fields.

    All models inherit from this to get:
    - id field (uid - set by business logic)
    - created_at timestamp (set by business logic)
    - Shared database connection
    """
    id = CharField(primary_key=True, max_length=10)
    created_at = DateTimeField()

    class Meta:
        database = database


class Jar(BaseModel):
    """
    Named money bucket owned by one user.

    Business rules (enforced in jar_business_logic.py):
    - balance >= 0 at all times, only changed by the transfer engine
    - Name unique per user
    - Can only be deleted when balance == 0
    """
    user_id = CharField(max_length=64, index=True)
    name = CharField(max_length=255)
    color = CharField(max_length=20, default='#6b7280')
    is_primary = BooleanField(default=False)
    balance = MoneyField(default=0)
    updated_at = DateTimeField()

    class Meta:
        table_name = 'jarbook_jars'
        indexes = (
            (('user_id', 'name'), True),
        )


class JarTransfer(BaseModel):
    """
    Immutable ledger row for one money movement.

    NULL from_jar_id / to_jar_id means free cash. Rows are never updated
    or deleted.
    """
    user_id = CharField(max_length=64)
    from_jar_id = CharField(max_length=10, null=True)
    to_jar_id = CharField(max_length=10, null=True)
    amount = MoneyField()
    memo = TextField(default='')
    related_goal_id = CharField(max_length=10, null=True, index=True)

    class Meta:
        table_name = 'jarbook_jar_transfers'
        indexes = (
            (('user_id', 'created_at'), False),
        )


class Goal(BaseModel):
    """
    Savings target funded through transfers into jar_id.

    current_amount is a cache of the signed sum of transfers with
    related_goal_id == id, maintained by the transfer engine together with
    status ('active', 'paused', 'achieved', 'expired').
    """
    user_id = CharField(max_length=64, index=True)
    title = CharField(max_length=255)
    target_amount = MoneyField()
    current_amount = MoneyField(default=0)
    target_date = DateTimeField()
    jar_id = CharField(max_length=10)
    auto_allocate_enabled = BooleanField(default=False)
    auto_allocate_type = CharField(max_length=10, default='percent')  # 'percent' or 'fixed'
    auto_allocate_value = MoneyField(default=10)
    status = CharField(max_length=10, default='active')
    updated_at = DateTimeField()

    class Meta:
        table_name = 'jarbook_goals'
        indexes = (
            (('user_id', 'title'), True),
        )


class RecurringRule(BaseModel):
    """
    Template for generated income/expense records.

    start_date / end_date are the UTC instants of local midnights in the
    rule's tz_offset_minutes. last_generated_at is the cursor of the
    recurrence engine and only moves forward.
    """
    user_id = CharField(max_length=64, index=True)
    type = CharField(max_length=10)  # 'income' or 'expense'
    category = CharField(max_length=255)
    source = CharField(max_length=255, default='')
    amount = MoneyField()
    repeat = CharField(max_length=10, default='monthly')  # 'weekly', 'monthly', 'yearly'
    day_of_month = SmallIntegerField(null=True)
    start_date = DateTimeField()
    end_date = DateTimeField(null=True)
    is_active = BooleanField(default=True)
    notes = TextField(default='')
    tz_offset_minutes = IntegerField(default=420)
    last_run_at = DateTimeField(null=True)
    last_generated_at = DateTimeField(null=True)
    updated_at = DateTimeField()

    class Meta:
        table_name = 'jarbook_recurring_rules'


class Income(BaseModel):
    """
    Income record. recurring_rule_id is set on records generated by the
    recurrence engine and together with date forms the idempotency key.
    """
    user_id = CharField(max_length=64)
    source = CharField(max_length=255, default='')
    category = CharField(max_length=255, default='Uncategorized')
    amount = MoneyField()
    date = DateTimeField()
    notes = TextField(default='')
    recurring_rule_id = CharField(max_length=10, null=True)
    updated_at = DateTimeField()

    class Meta:
        table_name = 'jarbook_income'
        indexes = (
            (('user_id', 'date'), False),
            (('recurring_rule_id', 'date'), True),
        )


class Expense(BaseModel):
    """Expense record. Same shape and idempotency key as Income."""
    user_id = CharField(max_length=64)
    source = CharField(max_length=255, default='')
    category = CharField(max_length=255, default='Uncategorized')
    amount = MoneyField()
    date = DateTimeField()
    notes = TextField(default='')
    recurring_rule_id = CharField(max_length=10, null=True)
    updated_at = DateTimeField()

    class Meta:
        table_name = 'jarbook_expenses'
        indexes = (
            (('user_id', 'date'), False),
            (('recurring_rule_id', 'date'), True),
        )


# List of all models for easy reference
ALL_MODELS = [
    Jar,
    JarTransfer,
    Goal,
    RecurringRule,
    Income,
    Expense,
]
