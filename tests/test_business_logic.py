"""
Tests for business_logic.py

Configuration loading, database initialization and the income/expense
rules, including auto-allocation after income.
"""

import json
import pytest
from datetime import datetime
from decimal import Decimal
from database_model import Goal
from errors import InvalidAmountError, NotFoundError
import business_logic
import database_manager as db
import goal_business_logic as goalbl
import jar_business_logic as jarbl

USER = 'user-1'


# ==================== CONFIGURATION ====================

def test_app_settings_defaults():
    settings = business_logic.AppSettings()
    assert settings.db_engine == 'mysql'
    assert settings.currency == 'THB'
    assert settings.default_tz_offset_minutes == 420
    assert settings.recurrence_enabled is True
    assert settings.recurrence_interval_seconds == 3600


def test_app_settings_from_dict_ignores_unknown_keys():
    settings = business_logic.AppSettings.from_dict({
        'db_engine': 'SQLite',
        'db_port': '3307',
        'currency': 'EUR',
        'unknown': 'x',
    })
    assert settings.db_engine == 'sqlite'
    assert settings.db_port == 3307
    assert settings.currency == 'EUR'
    assert not hasattr(settings, 'unknown')


def test_app_settings_rejects_unknown_engine():
    with pytest.raises(ValueError, match="Unsupported db_engine"):
        business_logic.AppSettings(db_engine='oracle')


def test_load_config_from_env_path(tmp_path, monkeypatch):
    config_file = tmp_path / "jarbook_config.json"
    config_file.write_text(json.dumps({'db_engine': 'sqlite', 'currency': 'EUR'}))
    monkeypatch.setenv("JARBOOK_CONFIG", str(config_file))

    assert business_logic.load_config() == {'db_engine': 'sqlite', 'currency': 'EUR'}


def test_load_config_missing_file(tmp_path, monkeypatch):
    monkeypatch.setenv("JARBOOK_CONFIG", str(tmp_path / "missing.json"))
    assert business_logic.load_config() is None


def test_initialize_database_sqlite(tmp_path, monkeypatch):
    monkeypatch.setattr(business_logic, 'DATABASE_CONFIGURED', False)
    monkeypatch.setattr(business_logic, 'SETTINGS', business_logic.AppSettings())

    settings = business_logic.initialize_database({
        'db_engine': 'sqlite',
        'db_path': str(tmp_path / "init.db"),
        'currency': 'EUR',
    })

    try:
        assert business_logic.DATABASE_CONFIGURED is True
        assert settings.currency == 'EUR'
        assert business_logic.SETTINGS is settings
        assert db.check_connection()
    finally:
        db.close_connection()


def test_initialize_database_without_config(tmp_path, monkeypatch):
    """Missing config leaves the app unconfigured instead of failing."""
    monkeypatch.setattr(business_logic, 'DATABASE_CONFIGURED', True)
    monkeypatch.setenv("JARBOOK_CONFIG", str(tmp_path / "missing.json"))

    business_logic.initialize_database()
    assert business_logic.DATABASE_CONFIGURED is False


# ==================== INCOME / EXPENSE ====================

def test_create_income_defaults(setup_test_db):
    result = business_logic.create_income(USER, 1000, date='2024-04-15')
    income = result['income']

    assert income['amount'] == Decimal('1000')
    assert income['date'] == datetime(2024, 4, 15)
    assert income['category'] == 'Uncategorized'
    assert income['recurring_rule_id'] is None
    assert result['allocations'] == []


def test_create_income_rejects_bad_amount(setup_test_db):
    with pytest.raises(InvalidAmountError):
        business_logic.create_income(USER, -10)


def test_create_income_rejects_bad_date(setup_test_db):
    with pytest.raises(ValueError, match="Invalid date"):
        business_logic.create_income(USER, 10, date='15/04/2024')


def test_create_income_triggers_auto_allocation(setup_test_db):
    jar = jarbl.create_jar(USER, 'Savings')
    goal = goalbl.create_goal(USER, 'Laptop', 30000, '2025-06-30', jar['id'],
                              auto_allocate={'enabled': True, 'type': 'percent', 'value': 20})

    result = business_logic.create_income(USER, 10000, category='Salary')

    assert result['allocations'][0]['amount'] == Decimal('2000')
    assert Goal.get_by_id(goal['id']).current_amount == Decimal('2000')


def test_income_kept_when_auto_allocation_fails(setup_test_db, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("allocator down")

    monkeypatch.setattr(goalbl, 'auto_allocate', broken)

    result = business_logic.create_income(USER, 500)
    assert result['allocations'] == []
    assert len(business_logic.get_entries('income', USER)) == 1


def test_create_expense_does_not_allocate(setup_test_db):
    jar = jarbl.create_jar(USER, 'Savings')
    goal = goalbl.create_goal(USER, 'Laptop', 30000, '2025-06-30', jar['id'],
                              auto_allocate={'enabled': True, 'type': 'percent', 'value': 20})

    expense = business_logic.create_expense(USER, 400, category='Food', notes='Lunch')
    assert expense['category'] == 'Food'
    assert expense['notes'] == 'Lunch'
    assert Goal.get_by_id(goal['id']).current_amount == Decimal('0')


def test_get_entries_date_range_inclusive(setup_test_db):
    business_logic.create_expense(USER, 1, date='2024-03-31')
    business_logic.create_expense(USER, 2, date='2024-04-01')
    business_logic.create_expense(USER, 3, date='2024-04-30')
    business_logic.create_expense(USER, 4, date='2024-05-01')

    april = business_logic.get_entries('expense', USER, '2024-04-01', '2024-04-30')
    assert [e['amount'] for e in april] == [Decimal('3'), Decimal('2')]


def test_get_entries_rejects_inverted_range(setup_test_db):
    with pytest.raises(ValueError, match="end_date cannot be before start_date"):
        business_logic.get_entries('expense', USER, '2024-05-01', '2024-04-01')


def test_get_entries_rejects_unknown_type(setup_test_db):
    with pytest.raises(ValueError, match="entry_type"):
        business_logic.get_entries('transfer', USER)


def test_delete_entry(setup_test_db):
    expense = business_logic.create_expense(USER, 10)
    business_logic.delete_entry('expense', USER, expense['id'])
    assert business_logic.get_entries('expense', USER) == []


def test_delete_other_users_entry_not_found(setup_test_db):
    expense = business_logic.create_expense(USER, 10)
    with pytest.raises(NotFoundError, match="Expense not found"):
        business_logic.delete_entry('expense', 'user-2', expense['id'])
